"""Seed development users and an enabled check-in config into the ledger database.

Prints each user's id so it can be sent as the ``X-Session-User`` header.
"""

from __future__ import annotations

import asyncio
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.db.session import build_engine, build_session_factory
from quota_ledger_api.models.user import User
from quota_ledger_api.services.checkin import CheckInConfigService


class SeedUser(TypedDict):
    email: str
    username: str
    role: str
    group: str


DEV_USERS: list[SeedUser] = [
    {
        "email": os.getenv("DEV_MEMBER_EMAIL", "member@ledger.dev").lower(),
        "username": "member",
        "role": "client",
        "group": "default",
    },
    {
        "email": os.getenv("DEV_ADMIN_EMAIL", "admin@ledger.dev").lower(),
        "username": "admin",
        "role": "admin",
        "group": "default",
    },
    {
        "email": os.getenv("DEV_VIP_EMAIL", "vip@ledger.dev").lower(),
        "username": "vip",
        "role": "client",
        "group": "vip",
    },
]


async def seed_users(session: AsyncSession) -> list[User]:
    seeded: list[User] = []
    for user in DEV_USERS:
        with session.no_autoflush:
            existing = await session.execute(select(User).where(User.email == user["email"]))
        record = existing.scalar_one_or_none()

        if record:
            record.username = user["username"]
            record.role = user["role"]
            record.group = user["group"]
            record.status = "active"
        else:
            record = User(
                email=user["email"],
                username=user["username"],
                role=user["role"],
                group=user["group"],
                status="active",
                extra_groups=[],
            )
            session.add(record)
        seeded.append(record)
    await session.commit()
    return seeded


async def main() -> None:
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)

    try:
        async with session_factory() as session:
            users = await seed_users(session)
            await CheckInConfigService(session).update({"enabled": True})
        for user in users:
            print(f"{user.username:<8} {user.role:<6} {user.id}")
        print("Development ledger users ready ✅")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())

from __future__ import annotations

from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session

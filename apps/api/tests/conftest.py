import os
import sys
from pathlib import Path
from typing import Any

os.environ.setdefault("OTEL_TRACES_EXPORTER", "none")

_SRC_PATH = Path(__file__).resolve().parents[1] / "src"
if _SRC_PATH.exists():
    sys.path.insert(0, str(_SRC_PATH))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from quota_ledger_api import models  # noqa: E402,F401
from quota_ledger_api.app import create_app  # noqa: E402
from quota_ledger_api.db.base import Base  # noqa: E402
from quota_ledger_api.db.session import build_engine, build_session_factory, get_session  # noqa: E402
from quota_ledger_api.models.user import User, UserRoleEnum  # noqa: E402
from quota_ledger_api.observability.ledger import get_ledger_store  # noqa: E402
from quota_ledger_api.observability.scheduler import get_ledger_scheduler_store  # noqa: E402
from quota_ledger_api.services.checkin.config import CheckInConfigService  # noqa: E402
from quota_ledger_api.services.checkin.leaderboard import invalidate_leaderboard_cache  # noqa: E402
from quota_ledger_api.services.settings.snapshots import reset_snapshot_cache  # noqa: E402


async def _create_factory(database_url: str):
    engine = build_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, build_session_factory(engine)


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_snapshot_cache()
    invalidate_leaderboard_cache()
    get_ledger_store().reset()
    get_ledger_scheduler_store().reset()
    yield
    reset_snapshot_cache()
    invalidate_leaderboard_cache()


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _create_factory("sqlite+aiosqlite:///:memory:")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path: Path):
    """File-backed database so concurrent sessions get their own connections."""

    engine, factory = await _create_factory(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


async def create_user(factory, *, admin: bool = False, **fields: Any) -> User:
    fields.setdefault("email", f"{fields.get('username') or os.urandom(6).hex()}@example.com")
    fields.setdefault("extra_groups", [])
    if admin:
        fields["role"] = UserRoleEnum.ADMIN.value
    async with factory() as session:
        user = User(**fields)
        session.add(user)
        await session.commit()
        return user


async def configure_checkin(factory, **changes: Any) -> None:
    changes.setdefault("enabled", True)
    async with factory() as session:
        await CheckInConfigService(session).update(changes)


@pytest.fixture
def make_user():
    return create_user


@pytest.fixture
def enable_checkin():
    return configure_checkin

"""Engine and session wiring for the ledger database."""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from quota_ledger_api.core.settings import settings


def _install_sqlite_transaction_hooks(engine: AsyncEngine, *, busy_timeout_seconds: float) -> None:
    """Serialize SQLite writers with ``BEGIN IMMEDIATE`` instead of lock upgrades.

    pysqlite's implicit transactions take the write lock lazily, so two sessions
    that read before writing can deadlock and fail with ``database is locked``.
    Taking the reserved lock at BEGIN makes competing writers queue on the busy
    timeout instead.

    The hook fires for every transaction, read-only ones included, so on SQLite
    a slow reader holds back writers and readers queue behind an open write.
    SQLite is the development and test backend; production runs on PostgreSQL,
    where no hook is installed and transactions keep their default isolation.
    """

    busy_timeout_ms = int(busy_timeout_seconds * 1000)

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:  # type: ignore[no-redef]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms};")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(connection) -> None:  # type: ignore[no-redef]
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine with dialect-specific transaction behaviour."""

    is_sqlite = database_url.startswith("sqlite")
    engine = create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=not is_sqlite,
        connect_args={"timeout": settings.database_busy_timeout_seconds} if is_sqlite else {},
    )
    if is_sqlite:
        _install_sqlite_transaction_hooks(
            engine,
            busy_timeout_seconds=settings.database_busy_timeout_seconds,
        )
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine(settings.database_url, echo=settings.database_echo)
async_session = build_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session

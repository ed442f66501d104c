import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from quota_ledger_api.models.user import User
from quota_ledger_api.observability.ledger import get_ledger_store
from quota_ledger_api.services.errors import CodeExhausted, ConcurrencyConflict, StoreUnavailable
from quota_ledger_api.services.transactions import RetryPolicy, classify_store_error, run_ledger_transaction

FAST = RetryPolicy(max_attempts=3, base_backoff_seconds=0.0, max_backoff_seconds=0.0, deadline_seconds=5.0)


class RecordingSession:
    def __init__(self) -> None:
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


def _locked() -> OperationalError:
    return OperationalError("UPDATE redemption_codes", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_conflicts_are_retried_until_success() -> None:
    session = RecordingSession()
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise _locked()
        return "ok"

    result = await run_ledger_transaction(session, operation, label="test", policy=FAST)

    assert result == "ok"
    assert calls == 3
    assert session.commits == 1
    assert session.rollbacks == 2
    assert get_ledger_store().snapshot().retries == {"test": 2}


@pytest.mark.asyncio
async def test_conflicts_surface_after_attempt_limit() -> None:
    session = RecordingSession()

    async def operation() -> None:
        raise ConcurrencyConflict()

    with pytest.raises(ConcurrencyConflict):
        await run_ledger_transaction(session, operation, label="test", policy=FAST)

    assert session.rollbacks == 3
    assert session.commits == 0


@pytest.mark.asyncio
async def test_domain_errors_are_not_retried() -> None:
    session = RecordingSession()
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise CodeExhausted()

    with pytest.raises(CodeExhausted):
        await run_ledger_transaction(session, operation, label="test", policy=FAST)

    assert calls == 1
    assert session.rollbacks == 1


@pytest.mark.asyncio
async def test_connection_failures_surface_immediately() -> None:
    session = RecordingSession()
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise OperationalError("SELECT 1", {}, Exception("unable to open database file"))

    with pytest.raises(StoreUnavailable):
        await run_ledger_transaction(session, operation, label="test", policy=FAST)

    assert calls == 1


def test_classify_store_error() -> None:
    assert isinstance(classify_store_error(_locked()), ConcurrencyConflict)
    assert isinstance(classify_store_error(ConnectionRefusedError()), StoreUnavailable)
    assert classify_store_error(ValueError("nope")) is None


@pytest.mark.asyncio
async def test_sqlite_reads_queue_behind_an_open_write(file_session_factory) -> None:
    async with file_session_factory() as writer:
        writer.add(User(email="queued@example.com", username="queued"))
        await writer.flush()

        async def read_usernames() -> list[str]:
            async with file_session_factory() as reader:
                return list((await reader.execute(select(User.username))).scalars())

        pending = asyncio.create_task(read_usernames())
        await asyncio.sleep(0.2)
        assert not pending.done()

        await writer.commit()

    assert await asyncio.wait_for(pending, timeout=10) == ["queued"]

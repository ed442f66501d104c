"""Bounded-retry transaction runner for ledger mutations."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.observability.ledger import get_ledger_store
from quota_ledger_api.services.errors import ConcurrencyConflict, LedgerError, StoreUnavailable

T = TypeVar("T")

IntegrityResolver = Callable[[IntegrityError], Awaitable[LedgerError | None]]

_CONFLICT_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock detected",
    "could not serialize access",
)
_CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int
    base_backoff_seconds: float
    max_backoff_seconds: float
    deadline_seconds: float

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(settings.ledger_max_attempts, 1),
            base_backoff_seconds=max(settings.ledger_retry_base_backoff_seconds, 0.0),
            max_backoff_seconds=max(settings.ledger_retry_max_backoff_seconds, 0.0),
            deadline_seconds=max(settings.ledger_retry_deadline_seconds, 0.0),
        )

    def backoff(self, attempt: int) -> float:
        delay = self.base_backoff_seconds * (2 ** (attempt - 1))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        return delay + random.uniform(0, self.base_backoff_seconds)


def classify_store_error(error: BaseException) -> LedgerError | None:
    """Map driver failures onto the ledger taxonomy; ``None`` means not a store fault."""

    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return StoreUnavailable(reason=type(error.orig).__name__)
        sqlstate = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
        message = str(error.orig).lower()
        if sqlstate in _CONFLICT_SQLSTATES or any(marker in message for marker in _CONFLICT_MARKERS):
            return ConcurrencyConflict()
        if isinstance(error, (OperationalError, InterfaceError)):
            return StoreUnavailable(reason=type(error.orig).__name__)
        return None
    if isinstance(error, (OSError, asyncio.TimeoutError)):
        return StoreUnavailable(reason=type(error).__name__)
    return None


async def run_ledger_transaction(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    resolve_integrity_error: IntegrityResolver | None = None,
    policy: RetryPolicy | None = None,
) -> T:
    """Run ``operation`` in one transaction, committing on success.

    Domain errors roll back and propagate untouched. Conflicts (lock contention,
    serialization failures, uniqueness races not claimed by
    ``resolve_integrity_error``) are retried with backoff until the attempt
    limit or deadline runs out. Store outages surface immediately.
    """

    policy = policy or RetryPolicy.from_settings()
    deadline = time.monotonic() + policy.deadline_seconds
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await operation()
            await session.commit()
            return result
        except ConcurrencyConflict as conflict:
            await session.rollback()
            failure: LedgerError = conflict
        except LedgerError:
            await session.rollback()
            raise
        except IntegrityError as error:
            await session.rollback()
            resolved = await resolve_integrity_error(error) if resolve_integrity_error else None
            await session.rollback()
            if resolved is not None:
                raise resolved from error
            failure = ConcurrencyConflict(constraint=type(error.orig).__name__)
        except (DBAPIError, OSError, asyncio.TimeoutError) as error:
            await _safe_rollback(session)
            classified = classify_store_error(error)
            if classified is None:
                raise
            if not isinstance(classified, ConcurrencyConflict):
                logger.error("Ledger store unavailable", operation=label, error=str(error))
                raise classified from error
            failure = classified

        delay = policy.backoff(attempt)
        if attempt >= policy.max_attempts or time.monotonic() + delay > deadline:
            logger.warning("Ledger transaction gave up after conflicts", operation=label, attempts=attempt)
            raise failure

        get_ledger_store().record_retry(label)
        logger.info("Retrying ledger transaction", operation=label, attempt=attempt + 1, delay_seconds=delay)
        await asyncio.sleep(delay)


async def _safe_rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except (DBAPIError, OSError) as error:  # pragma: no cover - connection already gone
        logger.warning("Rollback failed after store error", error=str(error))


__all__ = ["RetryPolicy", "classify_store_error", "run_ledger_transaction"]

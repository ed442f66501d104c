"""Apply quota grants that were recorded but not yet credited."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from quota_ledger_api.core.settings import settings
from quota_ledger_api.services.quota import QuotaBalanceStore, QuotaLedger

from ._session import SessionFactory, open_session


async def reconcile_pending_grants(
    *,
    session_factory: SessionFactory,
    batch_size: int | None = None,
    balance_store: QuotaBalanceStore | None = None,
) -> Dict[str, Any]:
    """Settle pending grants in creation order.

    Without an explicit ``balance_store`` the configured store is used, the
    same one request-time grants credit.

    Failed grants stay pending; the run raises so the scheduler records the
    failure and retries according to the job's backoff policy.
    """

    limit = batch_size or settings.quota_reconciliation_batch_size
    session = await open_session(session_factory)
    async with session as managed_session:
        ledger = QuotaLedger(managed_session, balance_store=balance_store)
        summary = await ledger.settle_pending(limit=limit)

    logger.bind(summary=summary).info("Quota reconciliation sweep completed")
    if summary["failed"]:
        raise RuntimeError(f"{summary['failed']} quota grants could not be settled")
    return summary

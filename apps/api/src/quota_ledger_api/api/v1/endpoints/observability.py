"""Observability endpoints for ledger outcomes and scheduled jobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from quota_ledger_api.api.dependencies.security import require_admin_api_key
from quota_ledger_api.observability.ledger import get_ledger_store
from quota_ledger_api.observability.scheduler import get_ledger_scheduler_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/ledger",
    dependencies=[Depends(require_admin_api_key)],
    summary="Check-in and redemption outcome counters",
)
async def get_ledger_snapshot() -> dict[str, object]:
    """Aggregated check-in and redemption outcomes (requires admin API key)."""
    return get_ledger_store().snapshot().as_dict()


@router.get(
    "/scheduler",
    dependencies=[Depends(require_admin_api_key)],
    summary="Scheduled job telemetry",
)
async def get_scheduler_snapshot() -> dict[str, object]:
    return get_ledger_scheduler_store().snapshot().as_dict()

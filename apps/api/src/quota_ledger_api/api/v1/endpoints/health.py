from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.db.session import get_session
from quota_ledger_api.observability.scheduler import get_ledger_scheduler_store


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as error:
        components["database"] = ComponentStatus(status="error", detail=str(error))
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    scheduler = getattr(request.app.state, "ledger_job_scheduler", None)
    if settings.ledger_job_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        detail = None if running else "Ledger scheduler not running"
        scheduler_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        snapshot = get_ledger_scheduler_store().snapshot()
        failing_jobs = [
            job_id
            for job_id, job in snapshot.jobs.items()
            if job.totals.get("consecutive_failures", 0) > 0
        ]
        if failing_jobs:
            scheduler_status = "error"
            detail = f"Jobs failing: {', '.join(failing_jobs)}"
            status = "error"
        elif not running:
            status = "degraded" if status != "error" else status
        components["ledger_scheduler"] = ComponentStatus(status=scheduler_status, detail=detail)
    else:
        components["ledger_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Ledger scheduler disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)

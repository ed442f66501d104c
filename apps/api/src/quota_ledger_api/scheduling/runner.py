"""Scheduler runtime for ledger maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from quota_ledger_api.observability.scheduler import get_ledger_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


class LedgerJobScheduler:
    """Register and run recurring ledger jobs from a TOML schedule."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = get_ledger_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            if not job.enabled:
                logger.info("Scheduled job disabled", job_id=job.id, task=job.task)
                continue
            func = resolve_task(job.task)
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(
                self.run_job,
                trigger=trigger,
                args=[job, func],
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered ledger job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Ledger job scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Ledger job scheduler stopped")

    async def run_job(self, job: JobDefinition, func: JobCallable | None = None) -> Any:
        """Run ``job`` now with retries; returns the job summary or ``None`` on failure."""

        func = func or resolve_task(job.task)
        self._observability.record_dispatch(job.id, job.task)
        started_at = time.perf_counter()

        attempt = 0
        while True:
            attempt += 1
            try:
                summary = await func(session_factory=self._session_factory, **job.kwargs)
            except Exception as exc:  # noqa: BLE001 - a failing job must not stop the scheduler
                error = str(exc) or type(exc).__name__
                self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error)
                if attempt >= job.max_attempts:
                    self._observability.record_run_failure(
                        job.id,
                        job.task,
                        runtime_seconds=time.perf_counter() - started_at,
                        attempts=attempt,
                        error=error,
                    )
                    logger.exception("Scheduled job failed after retries", job_id=job.id, attempts=attempt)
                    return None

                delay = job.backoff(attempt)
                if job.jitter_seconds:
                    delay += random.uniform(0, job.jitter_seconds)
                self._observability.record_retry(job.id, job.task, attempts=attempt + 1)
                logger.warning("Scheduled job retrying", job_id=job.id, attempt=attempt + 1, delay_seconds=delay)
                if delay:
                    await asyncio.sleep(delay)
                continue

            runtime_seconds = time.perf_counter() - started_at
            self._observability.record_success(
                job.id,
                job.task,
                runtime_seconds=runtime_seconds,
                attempts=attempt,
                summary=summary if isinstance(summary, dict) else None,
            )
            logger.info(
                "Scheduled job completed",
                job_id=job.id,
                attempts=attempt,
                runtime_seconds=runtime_seconds,
            )
            return summary

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        configured = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(configured),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "metrics": snapshot.jobs[job.id].as_dict() if job.id in snapshot.jobs else None,
                }
                for job in configured
            ],
        }


def resolve_task(task: str) -> JobCallable:
    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


__all__ = ["LedgerJobScheduler", "resolve_task"]

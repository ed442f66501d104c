"""Observability store for ledger job scheduler metrics."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict

_COUNTERS = ("runs", "success", "run_failures", "attempt_failures", "retries")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class SchedulerJobSnapshot:
    job_id: str
    task: str
    totals: Dict[str, int]
    runtime_seconds: float
    last_started_at: datetime | None
    last_success_at: datetime | None
    last_error_at: datetime | None
    last_error: str | None
    last_attempts: int
    last_summary: Dict[str, object] | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": dict(self.totals),
            "runtime_seconds": self.runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_summary": self.last_summary,
        }


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, SchedulerJobSnapshot]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": dict(self.totals),
            "jobs": {job_id: job.as_dict() for job_id, job in self.jobs.items()},
        }


@dataclass
class _JobState:
    job_id: str
    task: str
    counters: Counter = field(default_factory=Counter)
    consecutive_failures: int = 0
    runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_summary: Dict[str, object] | None = None

    def snapshot(self) -> SchedulerJobSnapshot:
        totals = {name: self.counters[name] for name in _COUNTERS}
        totals["consecutive_failures"] = self.consecutive_failures
        return SchedulerJobSnapshot(
            job_id=self.job_id,
            task=self.task,
            totals=totals,
            runtime_seconds=self.runtime_seconds,
            last_started_at=self.last_started_at,
            last_success_at=self.last_success_at,
            last_error_at=self.last_error_at,
            last_error=self.last_error,
            last_attempts=self.last_attempts,
            last_summary=self.last_summary,
        )


class LedgerSchedulerObservabilityStore:
    """Track dispatches, retries and outcomes of scheduled ledger jobs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, _JobState] = {}

    def _state(self, job_id: str, task: str) -> _JobState:
        state = self._jobs.get(job_id)
        if state is None:
            state = self._jobs[job_id] = _JobState(job_id=job_id, task=task)
        state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["runs"] += 1
            state.last_started_at = _utcnow()
            state.last_attempts = 0

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["attempt_failures"] += 1
            state.consecutive_failures += 1
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = _utcnow()

    def record_retry(self, job_id: str, task: str, *, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["retries"] += 1
            state.last_attempts = attempts

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        attempts: int,
        summary: Dict[str, object] | None = None,
    ) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["success"] += 1
            state.runtime_seconds += runtime_seconds
            state.consecutive_failures = 0
            state.last_attempts = attempts
            state.last_success_at = _utcnow()
            state.last_error = None
            state.last_error_at = None
            state.last_summary = summary

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.counters["run_failures"] += 1
            state.runtime_seconds += runtime_seconds
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = _utcnow()

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: state.snapshot() for job_id, state in self._jobs.items()}
        totals = {name: sum(job.totals[name] for job in jobs.values()) for name in _COUNTERS}
        return SchedulerSnapshot(totals=totals, jobs=jobs)

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()


_SCHEDULER_STORE = LedgerSchedulerObservabilityStore()


def get_ledger_scheduler_store() -> LedgerSchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "LedgerSchedulerObservabilityStore",
    "SchedulerSnapshot",
    "get_ledger_scheduler_store",
]

from pathlib import Path

import pytest

from quota_ledger_api.jobs.leaderboard import refresh_leaderboard
from quota_ledger_api.jobs.quota_reconciliation import reconcile_pending_grants
from quota_ledger_api.observability.scheduler import get_ledger_scheduler_store
from quota_ledger_api.scheduling.config import JobDefinition, load_job_definitions
from quota_ledger_api.scheduling.runner import LedgerJobScheduler, resolve_task

SCHEDULE_PATH = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


def _job(**overrides) -> JobDefinition:
    params = dict(
        id="job-alpha",
        task="tests.flaky",
        cron="* * * * *",
        max_attempts=3,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )
    params.update(overrides)
    return JobDefinition(**params)


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_ledger_scheduler_store()
    scheduler = LedgerJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")
    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"processed": 4}

    summary = await scheduler.run_job(_job(), flaky_job)

    assert summary == {"processed": 4}
    snapshot = store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs["job-alpha"]
    assert job_snapshot.last_error is None
    assert job_snapshot.last_summary == {"processed": 4}
    assert job_snapshot.totals["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_ledger_scheduler_store()
    scheduler = LedgerJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    result = await scheduler.run_job(_job(id="job-beta", max_attempts=2), failing_job)

    assert result is None
    job_snapshot = store.snapshot().jobs["job-beta"]
    assert job_snapshot.totals["run_failures"] == 1
    assert job_snapshot.totals["attempt_failures"] == 2
    assert job_snapshot.totals["consecutive_failures"] == 2
    assert job_snapshot.last_error == "boom"


def test_job_backoff_is_capped() -> None:
    job = _job(base_backoff_seconds=5.0, backoff_multiplier=2.0, max_backoff_seconds=12.0)

    assert [job.backoff(attempt) for attempt in (1, 2, 3)] == [5.0, 10.0, 12.0]


def test_bundled_schedule_resolves_tasks() -> None:
    config = load_job_definitions(SCHEDULE_PATH)

    tasks = {job.id: resolve_task(job.task) for job in config.jobs}

    assert tasks["leaderboard_refresh"] is refresh_leaderboard
    assert tasks["quota_reconciliation"] is reconcile_pending_grants
    reconciliation = next(job for job in config.jobs if job.id == "quota_reconciliation")
    assert reconciliation.kwargs == {"batch_size": 200}
    assert reconciliation.max_attempts == 3


def test_schedule_loader_skips_incomplete_entries(tmp_path: Path) -> None:
    path = tmp_path / "schedule.toml"
    path.write_text(
        'timezone = "Asia/Shanghai"\n'
        "[jobs.good]\n"
        'task = "quota_ledger_api.jobs.leaderboard.refresh_leaderboard"\n'
        'cron = "0 * * * *"\n'
        "enabled = false\n"
        "[jobs.broken]\n"
        'task = "quota_ledger_api.jobs.leaderboard.refresh_leaderboard"\n'
    )

    config = load_job_definitions(path)

    assert config.timezone == "Asia/Shanghai"
    assert [job.id for job in config.jobs] == ["good"]
    assert config.jobs[0].enabled is False


def test_missing_schedule_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "absent.toml")

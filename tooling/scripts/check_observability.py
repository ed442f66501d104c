#!/usr/bin/env python3
"""Quick health check for the quota ledger observability endpoints.

Usage:
    python tooling/scripts/check_observability.py \
        --base-url https://staging-ledger.example.com \
        --api-key "$ADMIN_API_KEY"

The script validates:
  * Readiness: the database is reachable and no scheduled job is failing.
  * Ledger counters: store outages and exhausted retries stay within thresholds.
  * Scheduler telemetry: quota reconciliation has not failed consecutively.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Quota ledger observability checker")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the quota ledger API service.",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Admin API key for the observability endpoints.",
    )
    parser.add_argument(
        "--max-store-unavailable",
        type=int,
        default=0,
        help="Maximum allowed StoreUnavailable rejections before failing (default: 0).",
    )
    parser.add_argument(
        "--max-conflicts",
        type=int,
        default=5,
        help="Maximum allowed requests that gave up on ConcurrencyConflict (default: 5).",
    )
    parser.add_argument(
        "--max-consecutive-job-failures",
        type=int,
        default=2,
        help="Maximum consecutive failures tolerated for any scheduled job (default: 2).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="HTTP request timeout in seconds.",
    )
    return parser.parse_args()


async def _get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


def _fail(message: str) -> None:
    print(f"[check-observability] ❌ {message}")
    sys.exit(1)


def _log_ok(message: str) -> None:
    print(f"[check-observability] ✅ {message}")


async def validate_readiness(client: httpx.AsyncClient) -> None:
    payload = await _get_json(client, "/api/v1/readyz")
    components = payload.get("components", {})
    database = components.get("database", {})
    if database.get("status") != "ready":
        _fail(f"Database not ready: {database.get('detail') or 'unknown error'}")
    if payload.get("status") == "error":
        failing = {name: item.get("detail") for name, item in components.items() if item.get("status") == "error"}
        _fail(f"Readiness reported errors: {failing}")
    _log_ok(f"Readiness OK (status={payload.get('status')})")


async def validate_ledger(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    max_store_unavailable: int,
    max_conflicts: int,
) -> None:
    headers = {"X-API-Key": api_key} if api_key else None
    payload = await _get_json(client, "/api/v1/observability/ledger", headers=headers)
    checkins = payload.get("checkins", {}) or {}
    redemptions = payload.get("redemptions", {}) or {}

    unavailable = int(checkins.get("StoreUnavailable", 0)) + int(redemptions.get("StoreUnavailable", 0))
    conflicts = int(checkins.get("ConcurrencyConflict", 0)) + int(redemptions.get("ConcurrencyConflict", 0))

    if unavailable > max_store_unavailable:
        _fail(f"Store unavailable rejections {unavailable} exceed threshold {max_store_unavailable}")
    if conflicts > max_conflicts:
        _fail(f"Unresolved conflicts {conflicts} exceed threshold {max_conflicts}")

    granted = payload.get("quotaGranted", {}) or {}
    _log_ok(
        f"Ledger observability OK (checkins={checkins.get('granted', 0)}, "
        f"redemptions={redemptions.get('redeemed', 0)}, quota={sum(int(v) for v in granted.values())})"
    )


async def validate_scheduler(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    max_consecutive_failures: int,
) -> None:
    headers = {"X-API-Key": api_key} if api_key else None
    payload = await _get_json(client, "/api/v1/observability/scheduler", headers=headers)
    jobs = payload.get("jobs", {}) or {}
    if not jobs:
        _log_ok("No scheduled job runs recorded yet")
        return

    for job_id, job in jobs.items():
        consecutive = int((job.get("totals") or {}).get("consecutive_failures", 0))
        if consecutive > max_consecutive_failures:
            _fail(f"Job {job_id} failed {consecutive} times in a row: {job.get('last_error')}")

    totals = payload.get("totals", {})
    _log_ok(
        f"Scheduler observability OK (runs={totals.get('runs', 0)}, "
        f"run_failures={totals.get('run_failures', 0)})"
    )


async def main() -> None:
    args = parse_args()

    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        await validate_readiness(client)
        await validate_ledger(
            client,
            api_key=args.api_key,
            max_store_unavailable=args.max_store_unavailable,
            max_conflicts=args.max_conflicts,
        )
        await validate_scheduler(
            client,
            api_key=args.api_key,
            max_consecutive_failures=args.max_consecutive_job_failures,
        )

    _log_ok("Observability checks completed successfully")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except httpx.HTTPStatusError as exc:
        _fail(f"HTTP {exc.response.status_code} while calling {exc.request.url}")
    except httpx.HTTPError as exc:
        _fail(f"Request failed: {exc}")

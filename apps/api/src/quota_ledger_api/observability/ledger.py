from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LedgerSnapshot:
    checkins: Dict[str, int]
    redemptions: Dict[str, int]
    quota_granted: Dict[str, int]
    retries: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "checkins": dict(self.checkins),
            "redemptions": dict(self.redemptions),
            "quotaGranted": dict(self.quota_granted),
            "retries": dict(self.retries),
        }


class LedgerObservabilityStore:
    """Count check-in and redemption outcomes for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._checkins: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._quota_granted: Dict[str, int] = defaultdict(int)
        self._retries: Dict[str, int] = defaultdict(int)

    def record_checkin(self, outcome: str, *, amount: int = 0) -> None:
        with self._lock:
            self._checkins["total"] += 1
            self._checkins[outcome] += 1
            if amount:
                self._quota_granted["checkin"] += amount

    def record_redemption(self, outcome: str, *, amount: int = 0) -> None:
        with self._lock:
            self._redemptions["total"] += 1
            self._redemptions[outcome] += 1
            if amount:
                self._quota_granted["redemption"] += amount

    def record_retry(self, operation: str) -> None:
        with self._lock:
            self._retries[operation] += 1

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                checkins=dict(self._checkins),
                redemptions=dict(self._redemptions),
                quota_granted=dict(self._quota_granted),
                retries=dict(self._retries),
            )

    def reset(self) -> None:
        with self._lock:
            self._checkins.clear()
            self._redemptions.clear()
            self._quota_granted.clear()
            self._retries.clear()


_STORE = LedgerObservabilityStore()


def get_ledger_store() -> LedgerObservabilityStore:
    return _STORE


__all__ = ["get_ledger_store", "LedgerObservabilityStore", "LedgerSnapshot"]

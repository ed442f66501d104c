"""Current date and time normalized to the ledger timezone."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from quota_ledger_api.core.settings import settings

NowProvider = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClockSource:
    """Supplies calendar dates in the configured server timezone.

    Every check-in, streak comparison and history window uses the same zone, so
    a "day" means the same thing everywhere in the ledger.
    """

    def __init__(self, tz_name: str | None = None, *, now_provider: NowProvider | None = None) -> None:
        self._zone = ZoneInfo(tz_name or settings.ledger_timezone)
        self._now_provider = now_provider or _utc_now

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def now(self) -> datetime:
        """Aware UTC timestamp."""

        current = self._now_provider()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(timezone.utc)

    def today(self) -> date:
        return self.now().astimezone(self._zone).date()

    def yesterday(self) -> date:
        return self.today() - timedelta(days=1)

    def timestamp(self) -> int:
        """Unix seconds, the unit used by redemption ``expired_time``."""

        return int(self.now().timestamp())


def fixed_clock(moment: datetime, tz_name: str | None = None) -> ClockSource:
    """Clock pinned to ``moment``."""

    return ClockSource(tz_name, now_provider=lambda: moment)


__all__ = ["ClockSource", "fixed_clock"]

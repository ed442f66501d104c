"""Check-in leaderboard built from per-user streak state."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime
from threading import Lock
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.models.checkin import UserStreakState
from quota_ledger_api.models.user import User
from quota_ledger_api.services.clock import ClockSource


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    user_id: UUID
    username: str | None
    total_checkins: int
    continuous_days: int
    total_rewards: int
    last_checkin_date: date | None


@dataclass(frozen=True, slots=True)
class LeaderboardSnapshot:
    entries: tuple[LeaderboardEntry, ...]
    generated_at: datetime

    def top(self, limit: int) -> "LeaderboardSnapshot":
        return LeaderboardSnapshot(entries=self.entries[:limit], generated_at=self.generated_at)


class _LeaderboardCache:
    def __init__(self) -> None:
        self._lock = Lock()
        self._snapshot: LeaderboardSnapshot | None = None
        self._stored_at = 0.0

    def get(self, ttl_seconds: float) -> LeaderboardSnapshot | None:
        with self._lock:
            if self._snapshot is None or ttl_seconds <= 0:
                return None
            if time.monotonic() - self._stored_at > ttl_seconds:
                return None
            return self._snapshot

    def put(self, snapshot: LeaderboardSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot
            self._stored_at = time.monotonic()

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None


_CACHE = _LeaderboardCache()


def invalidate_leaderboard_cache() -> None:
    _CACHE.invalidate()


def effective_streak(continuous_days: int, last_checkin_date: date | None, today: date) -> int:
    """Streak as members see it: zero once a full day has been missed."""

    if last_checkin_date is None:
        return 0
    if (today - last_checkin_date).days > 1:
        return 0
    return continuous_days


class LeaderboardAggregator:
    """Rank members by total check-ins, then total rewards, then user id.

    The ranking is read-only and cached per process; the cache holds the top
    ``leaderboard_max_limit`` rows so any smaller ``n`` is a slice of it.
    """

    def __init__(self, session: AsyncSession, *, clock: ClockSource | None = None) -> None:
        self._db = session
        self._clock = clock or ClockSource()

    async def top_n(self, n: int | None = None, *, use_cache: bool = True) -> LeaderboardSnapshot:
        limit = self._clamp(n)
        if use_cache:
            cached = _CACHE.get(settings.leaderboard_cache_ttl_seconds)
            if cached is not None:
                return cached.top(limit)
        snapshot = await self.refresh()
        return snapshot.top(limit)

    async def refresh(self) -> LeaderboardSnapshot:
        stmt = (
            select(UserStreakState, User.username, User.display_name)
            .join(User, User.id == UserStreakState.user_id)
            .where(UserStreakState.total_checkins > 0)
            .order_by(
                UserStreakState.total_checkins.desc(),
                UserStreakState.total_rewards.desc(),
                UserStreakState.user_id.asc(),
            )
            .limit(settings.leaderboard_max_limit)
            .execution_options(populate_existing=True)
        )
        rows = (await self._db.execute(stmt)).all()
        today = self._clock.today()

        entries = tuple(
            LeaderboardEntry(
                rank=index,
                user_id=state.user_id,
                username=username or display_name,
                total_checkins=state.total_checkins,
                continuous_days=effective_streak(state.continuous_days, state.last_checkin_date, today),
                total_rewards=state.total_rewards,
                last_checkin_date=state.last_checkin_date,
            )
            for index, (state, username, display_name) in enumerate(rows, start=1)
        )
        snapshot = LeaderboardSnapshot(entries=entries, generated_at=self._clock.now())
        _CACHE.put(snapshot)
        logger.debug("Leaderboard snapshot refreshed", entries=len(entries))
        return snapshot

    @staticmethod
    def _clamp(n: int | None) -> int:
        if n is None or n <= 0:
            return settings.leaderboard_default_limit
        return min(n, settings.leaderboard_max_limit)


__all__ = [
    "LeaderboardAggregator",
    "LeaderboardEntry",
    "LeaderboardSnapshot",
    "effective_streak",
    "invalidate_leaderboard_cache",
]

"""Keep the cached check-in leaderboard warm."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from quota_ledger_api.services.checkin.leaderboard import LeaderboardAggregator

from ._session import SessionFactory, open_session


async def refresh_leaderboard(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Recompute the leaderboard snapshot served to members."""

    session = await open_session(session_factory)
    async with session as managed_session:
        snapshot = await LeaderboardAggregator(managed_session).refresh()
        await managed_session.rollback()

    summary = {"entries": len(snapshot.entries), "generated_at": snapshot.generated_at.isoformat()}
    logger.bind(summary=summary).info("Leaderboard snapshot refreshed")
    return summary

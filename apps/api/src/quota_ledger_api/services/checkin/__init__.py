from .checkin_service import CheckInResult, CheckInService, CheckInStatus
from .config import CheckInConfig, CheckInConfigService
from .leaderboard import LeaderboardAggregator, LeaderboardEntry, LeaderboardSnapshot
from .rewards import RewardQuote, calculate_reward

__all__ = [
    "CheckInConfig",
    "CheckInConfigService",
    "CheckInResult",
    "CheckInService",
    "CheckInStatus",
    "LeaderboardAggregator",
    "LeaderboardEntry",
    "LeaderboardSnapshot",
    "RewardQuote",
    "calculate_reward",
]

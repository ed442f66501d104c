"""SQLAlchemy models package."""

from .checkin import CheckInRecord, UserStreakState  # noqa: F401
from .quota import QuotaGrant, QuotaGrantSource, QuotaGrantStatus  # noqa: F401
from .redemption import (  # noqa: F401
    RedemptionCode,
    RedemptionCodeStatus,
    RedemptionCodeType,
    RedemptionUsage,
)
from .settings import SettingSnapshot  # noqa: F401
from .user import User, UserRoleEnum, UserStatusEnum  # noqa: F401

from .code_store import RedemptionCodeGroup, RedemptionCodeStore, is_expired
from .redemption_service import RedemptionCheck, RedemptionResult, RedemptionService

__all__ = [
    "RedemptionCheck",
    "RedemptionCodeGroup",
    "RedemptionCodeStore",
    "RedemptionResult",
    "RedemptionService",
    "is_expired",
]

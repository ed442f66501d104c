"""Error taxonomy for the quota-granting ledger."""

from __future__ import annotations

from typing import Any


class LedgerError(RuntimeError):
    """Base exception for check-in and redemption failures.

    ``kind`` is the machine-readable error name surfaced to API clients.
    ``retryable`` errors may succeed if the caller tries again later.
    """

    kind: str = "LedgerError"
    status_code: int = 400
    retryable: bool = False
    default_message: str = "Ledger operation failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.default_message)
        self.details = details

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": str(self)}
        payload.update(self.details)
        return payload


class CheckInDisabled(LedgerError):
    kind = "CheckInDisabled"
    status_code = 403
    default_message = "Check-in is not enabled"


class VerificationRequired(LedgerError):
    kind = "VerificationRequired"
    status_code = 400
    default_message = "A verification code is required to check in"


class VerificationCodeInvalid(LedgerError):
    kind = "VerificationCodeInvalid"
    status_code = 400
    default_message = "Verification code is incorrect"


class AlreadyCheckedInToday(LedgerError):
    kind = "AlreadyCheckedInToday"
    status_code = 409
    default_message = "Already checked in today"


class CodeNotFound(LedgerError):
    kind = "CodeNotFound"
    status_code = 404
    default_message = "Redemption code not found"


class CodeDisabled(LedgerError):
    kind = "CodeDisabled"
    status_code = 409
    default_message = "Redemption code is disabled"


class CodeExpired(LedgerError):
    kind = "CodeExpired"
    status_code = 409
    default_message = "Redemption code has expired"


class CodeExhausted(LedgerError):
    kind = "CodeExhausted"
    status_code = 409
    default_message = "Redemption code has no remaining uses"


class PerUserLimitExceeded(LedgerError):
    kind = "PerUserLimitExceeded"
    status_code = 409
    default_message = "You have reached the maximum uses for this code"


class UserNotFound(LedgerError):
    kind = "UserNotFound"
    status_code = 404
    default_message = "User not found"


class InvalidConfiguration(LedgerError):
    kind = "InvalidConfiguration"
    status_code = 422
    default_message = "Configuration is invalid"


class ConcurrencyConflict(LedgerError):
    kind = "ConcurrencyConflict"
    status_code = 409
    retryable = True
    default_message = "Concurrent update detected, please retry"


class StoreUnavailable(LedgerError):
    kind = "StoreUnavailable"
    status_code = 503
    retryable = True
    default_message = "Ledger store is unavailable, please retry"


__all__ = [
    "AlreadyCheckedInToday",
    "CheckInDisabled",
    "CodeDisabled",
    "CodeExhausted",
    "CodeExpired",
    "CodeNotFound",
    "ConcurrencyConflict",
    "InvalidConfiguration",
    "LedgerError",
    "PerUserLimitExceeded",
    "StoreUnavailable",
    "UserNotFound",
    "VerificationCodeInvalid",
    "VerificationRequired",
]

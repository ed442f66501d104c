from fastapi import HTTPException

from quota_ledger_api.services.errors import LedgerError


def ledger_http_error(error: LedgerError) -> HTTPException:
    """Translate a ledger error into the JSON error contract."""

    headers = {"Retry-After": "1"} if error.retryable else None
    return HTTPException(status_code=error.status_code, detail=error.as_payload(), headers=headers)

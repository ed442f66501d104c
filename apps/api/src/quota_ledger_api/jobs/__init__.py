"""Recurring job entrypoints for ledger maintenance."""

__all__ = [
    "leaderboard",
    "quota_reconciliation",
]

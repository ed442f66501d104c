"""Scheduling utilities for recurring ledger maintenance."""

from .config import JobDefinition, load_job_definitions
from .runner import LedgerJobScheduler

__all__ = ["JobDefinition", "LedgerJobScheduler", "load_job_definitions"]

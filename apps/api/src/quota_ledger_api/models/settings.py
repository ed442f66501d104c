"""Versioned configuration snapshots edited by administrators."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, JSON, String, func

from quota_ledger_api.db.base import Base


class SettingSnapshot(Base):
    """Latest JSON value for a settings key; ``version`` bumps on every write."""

    __tablename__ = "setting_snapshots"

    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1, server_default="1")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

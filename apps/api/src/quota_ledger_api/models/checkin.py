"""Daily check-in ledger models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from quota_ledger_api.db.base import Base


class CheckInRecord(Base):
    """One granted check-in per user and calendar day; never updated or deleted."""

    __tablename__ = "checkin_records"
    __table_args__ = (
        UniqueConstraint("user_id", "calendar_date", name="uq_checkin_records_user_date"),
        Index("ix_checkin_records_calendar_date", "calendar_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    calendar_date = Column(Date, nullable=False)
    reward_amount = Column(BigInteger, nullable=False)
    streak_length_at_grant = Column(Integer, nullable=False)
    granted_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    user = relationship("User")


class UserStreakState(Base):
    """Rolling per-user summary maintained alongside each check-in insert."""

    __tablename__ = "checkin_streak_states"
    __table_args__ = (
        CheckConstraint("continuous_days >= 0", name="ck_checkin_streak_states_continuous_non_negative"),
        CheckConstraint("total_checkins >= 0", name="ck_checkin_streak_states_total_non_negative"),
        Index(
            "ix_checkin_streak_states_ranking",
            "total_checkins",
            "total_rewards",
        ),
    )

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True)
    continuous_days = Column(Integer, nullable=False, default=0, server_default="0")
    last_checkin_date = Column(Date, nullable=True)
    total_checkins = Column(Integer, nullable=False, default=0, server_default="0")
    total_rewards = Column(BigInteger, nullable=False, default=0, server_default="0")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User")

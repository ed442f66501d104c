"""Quota grant audit trail shared by check-ins and redemptions."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from quota_ledger_api.db.base import Base


class QuotaGrantSource(str, Enum):
    CHECKIN = "checkin"
    REDEMPTION = "redemption"


class QuotaGrantStatus(str, Enum):
    """``pending`` grants are recorded but not yet reflected in the balance."""

    PENDING = "pending"
    APPLIED = "applied"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class QuotaGrant(Base):
    """One quota credit, keyed by its originating event."""

    __tablename__ = "quota_grants"
    __table_args__ = (
        UniqueConstraint("source", "source_ref", name="uq_quota_grants_source_ref"),
        CheckConstraint("amount > 0", name="ck_quota_grants_amount_positive"),
        Index("ix_quota_grants_status_created", "status", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    source = Column(
        SqlEnum(QuotaGrantSource, name="quota_grant_source", values_callable=_enum_values),
        nullable=False,
    )
    source_ref = Column(String(160), nullable=False)
    amount = Column(BigInteger, nullable=False)
    status = Column(
        SqlEnum(QuotaGrantStatus, name="quota_grant_status", values_callable=_enum_values),
        nullable=False,
        default=QuotaGrantStatus.PENDING,
        server_default=QuotaGrantStatus.PENDING.value,
    )
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    applied_at = Column(DateTime(timezone=True), nullable=True)

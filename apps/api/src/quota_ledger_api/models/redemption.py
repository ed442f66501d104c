"""Redemption and gift code models."""

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
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from quota_ledger_api.db.base import Base


class RedemptionCodeType(str, Enum):
    """NORMAL codes are single use; GIFT codes allow bounded multi-use."""

    NORMAL = "normal"
    GIFT = "gift"


class RedemptionCodeStatus(str, Enum):
    """Stored lifecycle status. Expiry is derived from ``expired_time``."""

    UNUSED = "unused"
    DISABLED = "disabled"
    USED = "used"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class RedemptionCode(Base):
    """Admin-issued code that credits quota when redeemed."""

    __tablename__ = "redemption_codes"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_redemption_codes_used_non_negative"),
        CheckConstraint("used_count <= max_uses", name="ck_redemption_codes_used_bounded"),
        CheckConstraint("max_uses >= 1", name="ck_redemption_codes_max_uses_positive"),
        CheckConstraint("max_uses_per_user >= 1", name="ck_redemption_codes_per_user_positive"),
        CheckConstraint("quota > 0", name="ck_redemption_codes_quota_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    key = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(64), nullable=False, default="", server_default="", index=True)
    code_type = Column(
        "type",
        SqlEnum(RedemptionCodeType, name="redemption_code_type", values_callable=_enum_values),
        nullable=False,
        default=RedemptionCodeType.NORMAL,
        server_default=RedemptionCodeType.NORMAL.value,
    )
    status = Column(
        SqlEnum(RedemptionCodeStatus, name="redemption_code_status", values_callable=_enum_values),
        nullable=False,
        default=RedemptionCodeStatus.UNUSED,
        server_default=RedemptionCodeStatus.UNUSED.value,
    )
    quota = Column(BigInteger, nullable=False)
    max_uses = Column(Integer, nullable=False, default=1, server_default="1")
    max_uses_per_user = Column(Integer, nullable=False, default=1, server_default="1")
    used_count = Column(Integer, nullable=False, default=0, server_default="0")
    used_user_count = Column(Integer, nullable=False, default=0, server_default="0")
    # Unix seconds; 0 means the code never expires
    expired_time = Column(BigInteger, nullable=False, default=0, server_default="0")
    created_by_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    usages = relationship("RedemptionUsage", back_populates="code", cascade="all, delete-orphan", passive_deletes=True)


class RedemptionUsage(Base):
    """Per-user usage counter for a redemption code."""

    __tablename__ = "redemption_usages"
    __table_args__ = (
        UniqueConstraint("code_id", "user_id", name="uq_redemption_usages_code_user"),
        CheckConstraint("used_count_by_user >= 1", name="ck_redemption_usages_count_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code_id = Column(UUID(as_uuid=True), ForeignKey("redemption_codes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    used_count_by_user = Column(Integer, nullable=False, default=1, server_default="1")
    first_used_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_used_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    code = relationship("RedemptionCode", back_populates="usages")

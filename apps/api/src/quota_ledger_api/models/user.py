from enum import Enum
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, JSON, String, func
from sqlalchemy.dialects.postgresql import UUID

from quota_ledger_api.db.base import Base


class UserRoleEnum(str, Enum):
    CLIENT = "client"
    ADMIN = "admin"


class UserStatusEnum(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    username = Column(String(64), nullable=True, index=True)
    display_name = Column(String, nullable=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.CLIENT.value, server_default=UserRoleEnum.CLIENT.value)
    status = Column(String(length=16), nullable=False, default=UserStatusEnum.ACTIVE.value, server_default=UserStatusEnum.ACTIVE.value)
    group = Column("group_name", String(64), nullable=False, default="default", server_default="default")
    extra_groups = Column(JSON, nullable=False, default=list)
    # Spendable balance in integer quota units
    quota = Column(BigInteger, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRoleEnum.ADMIN.value

"""Users, check-in ledger, redemption codes, quota grants and settings snapshots.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


redemption_code_type = sa.Enum("normal", "gift", name="redemption_code_type")
redemption_code_status = sa.Enum("unused", "disabled", "used", name="redemption_code_status")
quota_grant_source = sa.Enum("checkin", "redemption", name="quota_grant_source")
quota_grant_status = sa.Enum("pending", "applied", name="quota_grant_status")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("username", sa.String(length=64), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="client"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("group_name", sa.String(length=64), nullable=False, server_default="default"),
        sa.Column("extra_groups", sa.JSON(), nullable=False),
        sa.Column("quota", sa.BigInteger(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_username", "users", ["username"])

    op.create_table(
        "checkin_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("calendar_date", sa.Date(), nullable=False),
        sa.Column("reward_amount", sa.BigInteger(), nullable=False),
        sa.Column("streak_length_at_grant", sa.Integer(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "calendar_date", name="uq_checkin_records_user_date"),
    )
    op.create_index("ix_checkin_records_user_id", "checkin_records", ["user_id"])
    op.create_index("ix_checkin_records_calendar_date", "checkin_records", ["calendar_date"])

    op.create_table(
        "checkin_streak_states",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("continuous_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_checkin_date", sa.Date(), nullable=True),
        sa.Column("total_checkins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_rewards", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("continuous_days >= 0", name="ck_checkin_streak_states_continuous_non_negative"),
        sa.CheckConstraint("total_checkins >= 0", name="ck_checkin_streak_states_total_non_negative"),
    )
    op.create_index(
        "ix_checkin_streak_states_ranking",
        "checkin_streak_states",
        ["total_checkins", "total_rewards"],
    )

    op.create_table(
        "redemption_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("key", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("type", redemption_code_type, nullable=False, server_default="normal"),
        sa.Column("status", redemption_code_status, nullable=False, server_default="unused"),
        sa.Column("quota", sa.BigInteger(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_uses_per_user", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used_user_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expired_time", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "created_by_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("used_count >= 0", name="ck_redemption_codes_used_non_negative"),
        sa.CheckConstraint("used_count <= max_uses", name="ck_redemption_codes_used_bounded"),
        sa.CheckConstraint("max_uses >= 1", name="ck_redemption_codes_max_uses_positive"),
        sa.CheckConstraint("max_uses_per_user >= 1", name="ck_redemption_codes_per_user_positive"),
        sa.CheckConstraint("quota > 0", name="ck_redemption_codes_quota_positive"),
    )
    op.create_index("ix_redemption_codes_key", "redemption_codes", ["key"], unique=True)
    op.create_index("ix_redemption_codes_name", "redemption_codes", ["name"])

    op.create_table(
        "redemption_usages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "code_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("redemption_codes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("used_count_by_user", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("first_used_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("code_id", "user_id", name="uq_redemption_usages_code_user"),
        sa.CheckConstraint("used_count_by_user >= 1", name="ck_redemption_usages_count_positive"),
    )
    op.create_index("ix_redemption_usages_user_id", "redemption_usages", ["user_id"])

    op.create_table(
        "quota_grants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("source", quota_grant_source, nullable=False),
        sa.Column("source_ref", sa.String(length=160), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", quota_grant_status, nullable=False, server_default="pending"),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("source", "source_ref", name="uq_quota_grants_source_ref"),
        sa.CheckConstraint("amount > 0", name="ck_quota_grants_amount_positive"),
    )
    op.create_index("ix_quota_grants_user_id", "quota_grants", ["user_id"])
    op.create_index("ix_quota_grants_status_created", "quota_grants", ["status", "created_at"])

    op.create_table(
        "setting_snapshots",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("setting_snapshots")
    op.drop_index("ix_quota_grants_status_created", table_name="quota_grants")
    op.drop_index("ix_quota_grants_user_id", table_name="quota_grants")
    op.drop_table("quota_grants")
    op.drop_index("ix_redemption_usages_user_id", table_name="redemption_usages")
    op.drop_table("redemption_usages")
    op.drop_index("ix_redemption_codes_name", table_name="redemption_codes")
    op.drop_index("ix_redemption_codes_key", table_name="redemption_codes")
    op.drop_table("redemption_codes")
    op.drop_index("ix_checkin_streak_states_ranking", table_name="checkin_streak_states")
    op.drop_table("checkin_streak_states")
    op.drop_index("ix_checkin_records_calendar_date", table_name="checkin_records")
    op.drop_index("ix_checkin_records_user_id", table_name="checkin_records")
    op.drop_table("checkin_records")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in (quota_grant_status, quota_grant_source, redemption_code_status, redemption_code_type):
        enum_type.drop(bind, checkfirst=True)

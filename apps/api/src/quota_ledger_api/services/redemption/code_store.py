"""Administrative storage for redemption codes."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.models.redemption import RedemptionCode, RedemptionCodeStatus, RedemptionCodeType
from quota_ledger_api.services.clock import ClockSource
from quota_ledger_api.services.errors import CodeNotFound, InvalidConfiguration


def generate_code_key() -> str:
    """32 lowercase hex characters."""

    return uuid.uuid4().hex


def is_expired(code: RedemptionCode, now_ts: int) -> bool:
    """Expiry is derived from ``expired_time`` and overrides the stored status."""

    return bool(code.expired_time) and code.expired_time < now_ts


def _clean_name(name: str | None) -> str:
    name = (name or "").strip()
    if not name or len(name) > settings.redemption_name_max_length:
        raise InvalidConfiguration(
            f"Name must be between 1 and {settings.redemption_name_max_length} characters",
        )
    return name


@dataclass(frozen=True, slots=True)
class RedemptionCodeGroup:
    name: str
    total: int
    unused: int
    used: int
    disabled: int
    quota_total: int
    used_count: int
    max_uses: int
    latest_created_at: datetime | None


class RedemptionCodeStore:
    """Batch creation, listing and lifecycle changes for redemption codes."""

    def __init__(self, session: AsyncSession, *, clock: ClockSource | None = None) -> None:
        self._db = session
        self._clock = clock or ClockSource()

    async def create_codes(
        self,
        *,
        name: str,
        count: int,
        quota: int,
        code_type: RedemptionCodeType = RedemptionCodeType.NORMAL,
        max_uses: int = 1,
        max_uses_per_user: int = 1,
        expired_time: int = 0,
        created_by: UUID | None = None,
    ) -> list[RedemptionCode]:
        """Create ``count`` codes sharing one name and policy.

        NORMAL codes are always single use regardless of the requested limits.
        """

        name = _clean_name(name)
        if not 1 <= count <= settings.redemption_max_batch_size:
            raise InvalidConfiguration(
                f"Count must be between 1 and {settings.redemption_max_batch_size}",
            )
        if quota <= 0:
            raise InvalidConfiguration("Quota must be positive")
        if expired_time and expired_time < self._clock.timestamp():
            raise InvalidConfiguration("Expiry time must be in the future")

        if code_type == RedemptionCodeType.NORMAL:
            max_uses = 1
            max_uses_per_user = 1
        elif max_uses < 1 or max_uses_per_user < 1 or max_uses_per_user > max_uses:
            raise InvalidConfiguration(
                "Gift codes need max_uses >= 1 and 1 <= max_uses_per_user <= max_uses",
            )

        now = self._clock.now()
        codes = [
            RedemptionCode(
                key=generate_code_key(),
                name=name,
                code_type=code_type,
                status=RedemptionCodeStatus.UNUSED,
                quota=quota,
                max_uses=max_uses,
                max_uses_per_user=max_uses_per_user,
                used_count=0,
                used_user_count=0,
                expired_time=expired_time or 0,
                created_by_user_id=created_by,
                created_at=now,
                updated_at=now,
            )
            for _ in range(count)
        ]
        self._db.add_all(codes)
        await self._db.commit()
        logger.info(
            "Redemption codes created",
            name=name,
            count=count,
            code_type=code_type.value,
            quota=quota,
        )
        return codes

    async def list_codes(self, *, page: int, page_size: int) -> tuple[Sequence[RedemptionCode], int]:
        return await self._page(None, page=page, page_size=page_size)

    async def search_codes(
        self,
        keyword: str,
        *,
        page: int,
        page_size: int,
    ) -> tuple[Sequence[RedemptionCode], int]:
        """Match an exact id or key, or a name prefix."""

        keyword = keyword.strip()
        if not keyword:
            return await self.list_codes(page=page, page_size=page_size)

        conditions = [RedemptionCode.name.startswith(keyword, autoescape=True), RedemptionCode.key == keyword]
        try:
            conditions.append(RedemptionCode.id == UUID(keyword))
        except ValueError:
            pass
        return await self._page(or_(*conditions), page=page, page_size=page_size)

    async def list_grouped_by_name(self, *, page: int, page_size: int) -> tuple[list[RedemptionCodeGroup], int]:
        total_stmt = select(func.count(func.distinct(RedemptionCode.name)))
        total = int((await self._db.execute(total_stmt)).scalar_one())

        def _count_status(status: RedemptionCodeStatus):
            return func.sum(case((RedemptionCode.status == status, 1), else_=0))

        latest = func.max(RedemptionCode.created_at)
        stmt = (
            select(
                RedemptionCode.name,
                func.count(RedemptionCode.id),
                _count_status(RedemptionCodeStatus.UNUSED),
                _count_status(RedemptionCodeStatus.USED),
                _count_status(RedemptionCodeStatus.DISABLED),
                func.sum(RedemptionCode.quota),
                func.sum(RedemptionCode.used_count),
                func.sum(RedemptionCode.max_uses),
                latest,
            )
            .group_by(RedemptionCode.name)
            .order_by(latest.desc(), RedemptionCode.name.asc())
            .offset(max(page - 1, 0) * page_size)
            .limit(page_size)
        )
        rows = (await self._db.execute(stmt)).all()
        groups = [
            RedemptionCodeGroup(
                name=name,
                total=int(total_codes or 0),
                unused=int(unused or 0),
                used=int(used or 0),
                disabled=int(disabled or 0),
                quota_total=int(quota_total or 0),
                used_count=int(used_count or 0),
                max_uses=int(max_uses or 0),
                latest_created_at=latest_created_at,
            )
            for name, total_codes, unused, used, disabled, quota_total, used_count, max_uses, latest_created_at in rows
        ]
        return groups, total

    async def get_code(self, code_id: UUID) -> RedemptionCode:
        stmt = select(RedemptionCode).where(RedemptionCode.id == code_id).execution_options(populate_existing=True)
        code = (await self._db.execute(stmt)).scalar_one_or_none()
        if code is None:
            raise CodeNotFound(codeId=str(code_id))
        return code

    async def get_by_key(self, key: str) -> RedemptionCode | None:
        stmt = select(RedemptionCode).where(RedemptionCode.key == key).execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def disable_code(self, code_id: UUID) -> RedemptionCode:
        code = await self.get_code(code_id)
        if code.status != RedemptionCodeStatus.DISABLED:
            code.status = RedemptionCodeStatus.DISABLED
            code.updated_at = self._clock.now()
            await self._db.commit()
            logger.info("Redemption code disabled", code_id=str(code_id))
        return code

    async def enable_code(self, code_id: UUID) -> RedemptionCode:
        """Re-enable a disabled code, landing on USED if it is already exhausted."""

        code = await self.get_code(code_id)
        if code.status == RedemptionCodeStatus.DISABLED:
            exhausted = code.used_count >= code.max_uses
            code.status = RedemptionCodeStatus.USED if exhausted else RedemptionCodeStatus.UNUSED
            code.updated_at = self._clock.now()
            await self._db.commit()
            logger.info("Redemption code enabled", code_id=str(code_id), status=code.status.value)
        return code

    async def update_code(
        self,
        code_id: UUID,
        *,
        name: str | None = None,
        quota: int | None = None,
        expired_time: int | None = None,
        max_uses: int | None = None,
        max_uses_per_user: int | None = None,
    ) -> RedemptionCode:
        """Edit a code's name, quota, expiry and use limits.

        ``None`` leaves a field unchanged. ``max_uses`` may not drop below the
        uses already redeemed; the stored status is recomputed from the new
        limit unless the code is disabled.
        """

        code = await self.get_code(code_id)
        values: dict[str, object] = {}
        if name is not None:
            values["name"] = _clean_name(name)
        if quota is not None:
            if quota <= 0:
                raise InvalidConfiguration("Quota must be positive")
            values["quota"] = quota
        if expired_time is not None:
            if expired_time < 0 or (expired_time and expired_time < self._clock.timestamp()):
                raise InvalidConfiguration("Expiry time must be 0 or in the future")
            values["expired_time"] = expired_time

        if code.code_type == RedemptionCodeType.NORMAL:
            new_max, new_per_user = 1, 1
        else:
            new_max = code.max_uses if max_uses is None else max_uses
            new_per_user = code.max_uses_per_user if max_uses_per_user is None else max_uses_per_user
            if new_max < 1 or new_per_user < 1 or new_per_user > new_max:
                raise InvalidConfiguration(
                    "Gift codes need max_uses >= 1 and 1 <= max_uses_per_user <= max_uses",
                )
        values["max_uses"] = new_max
        values["max_uses_per_user"] = new_per_user
        values["updated_at"] = self._clock.now()

        # Guarded so a redemption committed after the read cannot push used_count past the new limit
        stmt = (
            update(RedemptionCode)
            .where(RedemptionCode.id == code_id, RedemptionCode.used_count <= new_max)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if (await self._db.execute(stmt)).rowcount == 0:
            await self._db.rollback()
            current = await self.get_code(code_id)
            raise InvalidConfiguration(
                "max_uses cannot be lower than the uses already redeemed",
                usedCount=current.used_count,
            )

        await self._db.execute(
            update(RedemptionCode)
            .where(
                RedemptionCode.id == code_id,
                RedemptionCode.status == RedemptionCodeStatus.UNUSED,
                RedemptionCode.used_count >= RedemptionCode.max_uses,
            )
            .values(status=RedemptionCodeStatus.USED)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(
            update(RedemptionCode)
            .where(
                RedemptionCode.id == code_id,
                RedemptionCode.status == RedemptionCodeStatus.USED,
                RedemptionCode.used_count < RedemptionCode.max_uses,
            )
            .values(status=RedemptionCodeStatus.UNUSED)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()

        code = await self.get_code(code_id)
        logger.info(
            "Redemption code updated",
            code_id=str(code_id),
            fields=sorted(key for key in values if key != "updated_at"),
            status=code.status.value,
        )
        return code

    async def delete_code(self, code_id: UUID) -> None:
        """Delete one code and its usage rows. Quota already granted stays granted."""

        code = await self.get_code(code_id)
        await self._db.delete(code)
        await self._db.commit()
        logger.info("Redemption code deleted", code_id=str(code_id))

    async def delete_codes_by_name(self, name: str) -> int:
        """Delete every code in the batch called ``name``. Returns the number removed."""

        name = (name or "").strip()
        if not name:
            raise InvalidConfiguration("Name must not be empty")
        stmt = delete(RedemptionCode).where(RedemptionCode.name == name).execution_options(synchronize_session=False)
        result = await self._db.execute(stmt)
        await self._db.commit()
        deleted = result.rowcount or 0
        logger.info("Redemption codes deleted by name", name=name, deleted=deleted)
        return deleted

    async def delete_invalid_codes(self) -> int:
        """Delete used, disabled and expired codes. Returns the number removed."""

        now_ts = self._clock.timestamp()
        stmt = (
            delete(RedemptionCode)
            .where(
                or_(
                    RedemptionCode.status.in_([RedemptionCodeStatus.USED, RedemptionCodeStatus.DISABLED]),
                    and_(RedemptionCode.expired_time != 0, RedemptionCode.expired_time < now_ts),
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        await self._db.commit()
        deleted = result.rowcount or 0
        logger.info("Invalid redemption codes deleted", deleted=deleted)
        return deleted

    async def _page(self, condition, *, page: int, page_size: int) -> tuple[Sequence[RedemptionCode], int]:
        count_stmt = select(func.count()).select_from(RedemptionCode)
        stmt = select(RedemptionCode)
        if condition is not None:
            count_stmt = count_stmt.where(condition)
            stmt = stmt.where(condition)
        total = int((await self._db.execute(count_stmt)).scalar_one())
        stmt = (
            stmt.order_by(RedemptionCode.created_at.desc(), RedemptionCode.id.desc())
            .offset(max(page - 1, 0) * page_size)
            .limit(page_size)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalars().all(), total


__all__ = ["RedemptionCodeGroup", "RedemptionCodeStore", "generate_code_key", "is_expired"]

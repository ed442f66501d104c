"""Redeem codes for quota with bounded total and per-user uses."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.models.quota import QuotaGrantSource
from quota_ledger_api.models.redemption import (
    RedemptionCode,
    RedemptionCodeStatus,
    RedemptionCodeType,
    RedemptionUsage,
)
from quota_ledger_api.models.user import User
from quota_ledger_api.observability.ledger import get_ledger_store
from quota_ledger_api.services.clock import ClockSource
from quota_ledger_api.services.errors import (
    CodeDisabled,
    CodeExhausted,
    CodeExpired,
    CodeNotFound,
    LedgerError,
    PerUserLimitExceeded,
    UserNotFound,
)
from quota_ledger_api.services.quota import QuotaBalanceStore, QuotaLedger
from quota_ledger_api.services.transactions import RetryPolicy, run_ledger_transaction

from .code_store import RedemptionCodeStore, is_expired


@dataclass(frozen=True, slots=True)
class RedemptionResult:
    code_id: UUID
    credited_quota: int
    remaining_uses: int
    remaining_user_uses: int
    code_type: RedemptionCodeType
    status: RedemptionCodeStatus
    replayed: bool = False


@dataclass(frozen=True, slots=True)
class RedemptionCheck:
    code: RedemptionCode
    redeemable: bool
    expired: bool
    remaining_uses: int
    remaining_user_uses: int
    error: LedgerError | None = None


class RedemptionService:
    """Apply redemption codes to member balances."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: ClockSource | None = None,
        balance_store: QuotaBalanceStore | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._db = session
        self._clock = clock or ClockSource()
        self._codes = RedemptionCodeStore(session, clock=self._clock)
        self._ledger = QuotaLedger(session, balance_store=balance_store)
        self._retry_policy = retry_policy

    async def redeem(self, user_id: UUID, code_key: str, *, request_id: str | None = None) -> RedemptionResult:
        """Redeem ``code_key`` for ``user_id``.

        Checks run in a fixed order: not found, disabled, expired, exhausted,
        per-user limit. With ``request_id`` a repeated call returns the first
        successful result marked ``replayed`` instead of redeeming again.
        """

        key = (code_key or "").strip()
        request_id = (request_id or "").strip() or None

        async def _operation() -> tuple[RedemptionResult, UUID | None]:
            return await self._redeem_once(user_id, key, request_id)

        try:
            result, grant_id = await run_ledger_transaction(
                self._db,
                _operation,
                label="redemption",
                policy=self._retry_policy,
            )
        except LedgerError as error:
            get_ledger_store().record_redemption(error.kind)
            logger.bind(user_id=str(user_id), request_id=request_id).info(
                "Redemption rejected",
                reason=error.kind,
            )
            raise

        if result.replayed:
            get_ledger_store().record_redemption("replayed")
            return result

        get_ledger_store().record_redemption("redeemed", amount=result.credited_quota)
        if grant_id is not None and not self._ledger.applies_immediately:
            await self._ledger.settle_pending(grant_ids=[grant_id])
        logger.bind(user_id=str(user_id), code_id=str(result.code_id), request_id=request_id).info(
            "Redemption code redeemed",
            credited_quota=result.credited_quota,
            status=result.status.value,
        )
        return result

    async def validate(self, user_id: UUID, code_key: str) -> RedemptionCheck:
        """Describe whether ``user_id`` could redeem ``code_key`` right now. Read-only."""

        code = await self._codes.get_by_key((code_key or "").strip())
        if code is None:
            raise CodeNotFound()
        usage = await self._load_usage(code.id, user_id)
        used_by_user = usage.used_count_by_user if usage else 0
        error = self._eligibility_error(code, used_by_user)
        return RedemptionCheck(
            code=code,
            redeemable=error is None,
            expired=is_expired(code, self._clock.timestamp()),
            remaining_uses=max(code.max_uses - code.used_count, 0),
            remaining_user_uses=max(code.max_uses_per_user - used_by_user, 0),
            error=error,
        )

    async def _redeem_once(
        self,
        user_id: UUID,
        key: str,
        request_id: str | None,
    ) -> tuple[RedemptionResult, UUID | None]:
        code = await self._codes.get_by_key(key) if key else None
        if code is None:
            raise CodeNotFound()

        if request_id is not None:
            replay = await self._replay(code, user_id, request_id)
            if replay is not None:
                return replay, None

        user_exists = await self._db.execute(select(User.id).where(User.id == user_id))
        if user_exists.scalar_one_or_none() is None:
            raise UserNotFound(userId=str(user_id))

        usage = await self._load_usage(code.id, user_id)
        used_by_user = usage.used_count_by_user if usage else 0
        error = self._eligibility_error(code, used_by_user)
        if error is not None:
            raise error

        now = self._clock.now()
        claim = (
            update(RedemptionCode)
            .where(
                RedemptionCode.id == code.id,
                RedemptionCode.status == RedemptionCodeStatus.UNUSED,
                RedemptionCode.used_count < RedemptionCode.max_uses,
            )
            .values(
                used_count=RedemptionCode.used_count + 1,
                used_user_count=RedemptionCode.used_user_count + (0 if usage else 1),
                redeemed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if (await self._db.execute(claim)).rowcount == 0:
            raise CodeExhausted(codeId=str(code.id))

        if usage is None:
            self._db.add(
                RedemptionUsage(
                    code_id=code.id,
                    user_id=user_id,
                    used_count_by_user=1,
                    first_used_at=now,
                    last_used_at=now,
                )
            )
            await self._db.flush()
            used_by_user = 1
        else:
            bump = (
                update(RedemptionUsage)
                .where(
                    RedemptionUsage.id == usage.id,
                    RedemptionUsage.used_count_by_user < code.max_uses_per_user,
                )
                .values(used_count_by_user=RedemptionUsage.used_count_by_user + 1, last_used_at=now)
                .execution_options(synchronize_session=False)
            )
            if (await self._db.execute(bump)).rowcount == 0:
                raise PerUserLimitExceeded(codeId=str(code.id))
            used_by_user += 1

        exhaust = (
            update(RedemptionCode)
            .where(
                RedemptionCode.id == code.id,
                RedemptionCode.status == RedemptionCodeStatus.UNUSED,
                RedemptionCode.used_count >= RedemptionCode.max_uses,
            )
            .values(status=RedemptionCodeStatus.USED)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(exhaust)

        source_ref = self._source_ref(code.id, user_id, request_id, used_by_user)
        grant = await self._ledger.grant(
            user_id=user_id,
            amount=code.quota,
            source=QuotaGrantSource.REDEMPTION,
            source_ref=source_ref,
            description=f"Redemption code {code.name}",
        )

        await self._db.refresh(code)
        result = RedemptionResult(
            code_id=code.id,
            credited_quota=code.quota,
            remaining_uses=max(code.max_uses - code.used_count, 0),
            remaining_user_uses=max(code.max_uses_per_user - used_by_user, 0),
            code_type=code.code_type,
            status=code.status,
        )
        return result, grant.id

    async def _replay(self, code: RedemptionCode, user_id: UUID, request_id: str) -> RedemptionResult | None:
        grant = await self._ledger.find(
            QuotaGrantSource.REDEMPTION,
            self._source_ref(code.id, user_id, request_id, None),
        )
        if grant is None:
            return None
        usage = await self._load_usage(code.id, user_id)
        used_by_user = usage.used_count_by_user if usage else 0
        return RedemptionResult(
            code_id=code.id,
            credited_quota=grant.amount,
            remaining_uses=max(code.max_uses - code.used_count, 0),
            remaining_user_uses=max(code.max_uses_per_user - used_by_user, 0),
            code_type=code.code_type,
            status=code.status,
            replayed=True,
        )

    def _eligibility_error(self, code: RedemptionCode, used_by_user: int) -> LedgerError | None:
        code_id = str(code.id)
        if code.status == RedemptionCodeStatus.DISABLED:
            return CodeDisabled(codeId=code_id)
        if is_expired(code, self._clock.timestamp()):
            return CodeExpired(codeId=code_id, expiredTime=code.expired_time)
        if code.status == RedemptionCodeStatus.USED or code.used_count >= code.max_uses:
            return CodeExhausted(codeId=code_id)
        if used_by_user >= code.max_uses_per_user:
            return PerUserLimitExceeded(codeId=code_id, maxUsesPerUser=code.max_uses_per_user)
        return None

    async def _load_usage(self, code_id: UUID, user_id: UUID) -> RedemptionUsage | None:
        stmt = (
            select(RedemptionUsage)
            .where(RedemptionUsage.code_id == code_id, RedemptionUsage.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _source_ref(code_id: UUID, user_id: UUID, request_id: str | None, use_number: int | None) -> str:
        if request_id is not None:
            return f"{code_id}:{user_id}:request:{request_id[:64]}"
        return f"{code_id}:{user_id}:use:{use_number}"


__all__ = ["RedemptionCheck", "RedemptionResult", "RedemptionService"]

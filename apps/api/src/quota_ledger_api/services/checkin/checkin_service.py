"""Daily check-in: one reward per member and calendar day."""

from __future__ import annotations

import calendar
import random
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.models.checkin import CheckInRecord, UserStreakState
from quota_ledger_api.models.quota import QuotaGrantSource
from quota_ledger_api.models.user import User
from quota_ledger_api.observability.ledger import get_ledger_store
from quota_ledger_api.services.clock import ClockSource
from quota_ledger_api.services.errors import (
    AlreadyCheckedInToday,
    CheckInDisabled,
    LedgerError,
    UserNotFound,
    VerificationCodeInvalid,
    VerificationRequired,
)
from quota_ledger_api.services.quota import QuotaBalanceStore, QuotaLedger
from quota_ledger_api.services.transactions import RetryPolicy, run_ledger_transaction

from .config import CheckInConfig, CheckInConfigService
from .leaderboard import effective_streak, invalidate_leaderboard_cache
from .rewards import calculate_reward


@dataclass(frozen=True, slots=True)
class CheckInResult:
    reward_amount: int
    continuous_days: int
    total_checkins: int
    total_rewards: int
    calendar_date: date
    base_reward: int
    multiplier: Decimal


@dataclass(frozen=True, slots=True)
class CheckInStatus:
    checked_in_today: bool
    continuous_days: int
    total_checkins: int
    total_rewards: int
    last_checkin: date | None
    today_reward: int | None


@dataclass(frozen=True, slots=True)
class CheckInAuditRow:
    record: CheckInRecord
    username: str | None
    email: str | None


class CheckInService:
    """Grant daily check-in rewards and expose check-in history."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: ClockSource | None = None,
        rng: random.Random | None = None,
        balance_store: QuotaBalanceStore | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._db = session
        self._clock = clock or ClockSource()
        self._rng = rng
        self._ledger = QuotaLedger(session, balance_store=balance_store)
        self._retry_policy = retry_policy
        self._configs = CheckInConfigService(session)

    async def check_in(
        self,
        user_id: UUID,
        *,
        calendar_date: date | None = None,
        supplied_code: str | None = None,
    ) -> CheckInResult:
        """Record today's check-in for ``user_id`` and credit the reward.

        Raises :class:`AlreadyCheckedInToday` (carrying the original reward and
        streak) when the member already has a record for the day.
        """

        target_date = calendar_date or self._clock.today()
        try:
            config, _version = await self._configs.load()
            self._verify(config, supplied_code)

            async def _operation() -> tuple[CheckInResult, UUID | None]:
                return await self._grant(user_id, target_date, config)

            async def _resolve(_error: IntegrityError) -> LedgerError | None:
                existing = await self._find_record(user_id, target_date)
                return self._already_checked_in(existing) if existing else None

            result, grant_id = await run_ledger_transaction(
                self._db,
                _operation,
                label="checkin",
                resolve_integrity_error=_resolve,
                policy=self._retry_policy,
            )
        except LedgerError as error:
            get_ledger_store().record_checkin(error.kind)
            logger.bind(user_id=str(user_id), calendar_date=target_date.isoformat()).info(
                "Check-in rejected",
                reason=error.kind,
            )
            raise

        invalidate_leaderboard_cache()
        get_ledger_store().record_checkin("granted", amount=result.reward_amount)
        if grant_id is not None and not self._ledger.applies_immediately:
            await self._ledger.settle_pending(grant_ids=[grant_id])
        logger.bind(user_id=str(user_id), calendar_date=target_date.isoformat()).info(
            "Check-in granted",
            reward_amount=result.reward_amount,
            continuous_days=result.continuous_days,
        )
        return result

    async def get_status(self, user_id: UUID) -> CheckInStatus:
        today = self._clock.today()
        state = await self._load_state(user_id)
        todays_record = await self._find_record(user_id, today)

        if state is None:
            return CheckInStatus(
                checked_in_today=todays_record is not None,
                continuous_days=0,
                total_checkins=0,
                total_rewards=0,
                last_checkin=None,
                today_reward=None,
            )
        return CheckInStatus(
            checked_in_today=todays_record is not None,
            continuous_days=effective_streak(state.continuous_days, state.last_checkin_date, today),
            total_checkins=state.total_checkins,
            total_rewards=state.total_rewards,
            last_checkin=state.last_checkin_date,
            today_reward=todays_record.reward_amount if todays_record else None,
        )

    async def month_history(self, user_id: UUID, year: int, month: int) -> Sequence[CheckInRecord]:
        if not 1 <= month <= 12:
            raise ValueError("month must be between 1 and 12")
        first_day = date(year, month, 1)
        last_day = date(year, month, calendar.monthrange(year, month)[1])
        stmt = (
            select(CheckInRecord)
            .where(
                CheckInRecord.user_id == user_id,
                CheckInRecord.calendar_date >= first_day,
                CheckInRecord.calendar_date <= last_day,
            )
            .order_by(CheckInRecord.calendar_date.asc())
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def paged_history(
        self,
        user_id: UUID,
        *,
        page: int,
        page_size: int,
    ) -> tuple[Sequence[CheckInRecord], int]:
        total_stmt = select(func.count()).select_from(CheckInRecord).where(CheckInRecord.user_id == user_id)
        total = int((await self._db.execute(total_stmt)).scalar_one())
        stmt = (
            select(CheckInRecord)
            .where(CheckInRecord.user_id == user_id)
            .order_by(CheckInRecord.calendar_date.desc())
            .offset(max(page - 1, 0) * page_size)
            .limit(page_size)
        )
        return (await self._db.execute(stmt)).scalars().all(), total

    async def all_records(self, *, page: int, page_size: int) -> tuple[list[CheckInAuditRow], int]:
        """Every member's check-ins, newest first, for the admin audit view."""

        total = int((await self._db.execute(select(func.count()).select_from(CheckInRecord))).scalar_one())
        stmt = (
            select(CheckInRecord, User.username, User.email)
            .join(User, User.id == CheckInRecord.user_id)
            .order_by(CheckInRecord.calendar_date.desc(), CheckInRecord.granted_at.desc(), CheckInRecord.id.asc())
            .offset(max(page - 1, 0) * page_size)
            .limit(page_size)
        )
        rows = (await self._db.execute(stmt)).all()
        return [CheckInAuditRow(record=record, username=username, email=email) for record, username, email in rows], total

    @staticmethod
    def _verify(config: CheckInConfig, supplied_code: str | None) -> None:
        if not config.enabled:
            raise CheckInDisabled()
        if not config.verify_code_enabled:
            return
        if not supplied_code:
            raise VerificationRequired()
        if supplied_code != config.verify_code:
            raise VerificationCodeInvalid()

    async def _grant(
        self,
        user_id: UUID,
        target_date: date,
        config: CheckInConfig,
    ) -> tuple[CheckInResult, UUID | None]:
        user_exists = await self._db.execute(select(User.id).where(User.id == user_id))
        if user_exists.scalar_one_or_none() is None:
            raise UserNotFound(userId=str(user_id))

        existing = await self._find_record(user_id, target_date)
        if existing is not None:
            raise self._already_checked_in(existing)

        state = await self._load_state(user_id, for_update=True)
        if state is not None and state.last_checkin_date == target_date - timedelta(days=1):
            continuous_days = state.continuous_days + 1
        else:
            continuous_days = 1

        quote = calculate_reward(continuous_days, config, self._rng)
        now = self._clock.now()

        self._db.add(
            CheckInRecord(
                user_id=user_id,
                calendar_date=target_date,
                reward_amount=quote.amount,
                streak_length_at_grant=continuous_days,
                granted_at=now,
            )
        )
        if state is None:
            state = UserStreakState(user_id=user_id, total_checkins=0, total_rewards=0)
            self._db.add(state)
        state.continuous_days = continuous_days
        state.last_checkin_date = target_date
        state.total_checkins = (state.total_checkins or 0) + 1
        state.total_rewards = (state.total_rewards or 0) + quote.amount
        state.updated_at = now
        await self._db.flush()

        grant_id: UUID | None = None
        if quote.amount > 0:
            grant = await self._ledger.grant(
                user_id=user_id,
                amount=quote.amount,
                source=QuotaGrantSource.CHECKIN,
                source_ref=f"{user_id}:{target_date.isoformat()}",
                description=f"Daily check-in reward for {target_date.isoformat()}",
            )
            grant_id = grant.id

        result = CheckInResult(
            reward_amount=quote.amount,
            continuous_days=continuous_days,
            total_checkins=state.total_checkins,
            total_rewards=state.total_rewards,
            calendar_date=target_date,
            base_reward=quote.base_amount,
            multiplier=quote.multiplier,
        )
        return result, grant_id

    async def _find_record(self, user_id: UUID, calendar_date: date) -> CheckInRecord | None:
        stmt = select(CheckInRecord).where(
            CheckInRecord.user_id == user_id,
            CheckInRecord.calendar_date == calendar_date,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _load_state(self, user_id: UUID, *, for_update: bool = False) -> UserStreakState | None:
        stmt = (
            select(UserStreakState)
            .where(UserStreakState.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await self._db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _already_checked_in(record: CheckInRecord) -> AlreadyCheckedInToday:
        return AlreadyCheckedInToday(
            calendarDate=record.calendar_date.isoformat(),
            rewardAmount=record.reward_amount,
            continuousDays=record.streak_length_at_grant,
        )


__all__ = ["CheckInAuditRow", "CheckInResult", "CheckInService", "CheckInStatus"]

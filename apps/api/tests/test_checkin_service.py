import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from quota_ledger_api.models.checkin import CheckInRecord, UserStreakState
from quota_ledger_api.models.quota import QuotaGrant, QuotaGrantStatus
from quota_ledger_api.models.user import User
from quota_ledger_api.observability.ledger import get_ledger_store
from quota_ledger_api.services.checkin import CheckInService
from quota_ledger_api.services.checkin.leaderboard import effective_streak
from quota_ledger_api.services.clock import fixed_clock
from quota_ledger_api.services.errors import (
    AlreadyCheckedInToday,
    CheckInDisabled,
    UserNotFound,
    VerificationCodeInvalid,
    VerificationRequired,
)

START = date(2026, 3, 1)


def clock_for(day: date):
    return fixed_clock(datetime(day.year, day.month, day.day, 12, tzinfo=timezone.utc), "UTC")


async def _check_in(factory, user_id, day: date, **kwargs):
    async with factory() as session:
        return await CheckInService(session, clock=clock_for(day)).check_in(user_id, **kwargs)


async def _quota(factory, user_id) -> int:
    async with factory() as session:
        return (await session.execute(select(User.quota).where(User.id == user_id))).scalar_one()


@pytest.mark.asyncio
async def test_first_checkin_grants_reward_and_credits_quota(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(session_factory)
    user = await make_user(session_factory, username="first")

    result = await _check_in(session_factory, user.id, START)

    assert result.reward_amount == 100
    assert result.continuous_days == 1
    assert result.total_checkins == 1
    assert result.total_rewards == 100
    assert result.calendar_date == START
    assert await _quota(session_factory, user.id) == 100

    async with session_factory() as session:
        grant = (await session.execute(select(QuotaGrant))).scalar_one()
    assert grant.status == QuotaGrantStatus.APPLIED
    assert grant.source_ref == f"{user.id}:{START.isoformat()}"
    assert get_ledger_store().snapshot().checkins["granted"] == 1


@pytest.mark.asyncio
async def test_second_checkin_same_day_returns_original_outcome(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(session_factory, min_reward=10, max_reward=500)
    user = await make_user(session_factory, username="repeat")

    first = await _check_in(session_factory, user.id, START)
    with pytest.raises(AlreadyCheckedInToday) as excinfo:
        await _check_in(session_factory, user.id, START)

    assert excinfo.value.details["rewardAmount"] == first.reward_amount
    assert excinfo.value.details["continuousDays"] == 1
    assert await _quota(session_factory, user.id) == first.reward_amount

    async with session_factory() as session:
        records = (await session.execute(select(func.count()).select_from(CheckInRecord))).scalar_one()
        grants = (await session.execute(select(func.count()).select_from(QuotaGrant))).scalar_one()
        state = (await session.execute(select(UserStreakState))).scalar_one()
    assert records == 1
    assert grants == 1
    assert state.total_checkins == 1
    assert get_ledger_store().snapshot().checkins["AlreadyCheckedInToday"] == 1


@pytest.mark.asyncio
async def test_streak_increments_on_consecutive_days_and_resets_after_gap(
    session_factory, make_user, enable_checkin
) -> None:
    await enable_checkin(session_factory)
    user = await make_user(session_factory, username="streaker")

    day_one = await _check_in(session_factory, user.id, START)
    day_two = await _check_in(session_factory, user.id, START + timedelta(days=1))
    after_gap = await _check_in(session_factory, user.id, START + timedelta(days=3))

    assert day_one.continuous_days == 1
    assert day_two.continuous_days == 2
    assert after_gap.continuous_days == 1
    assert after_gap.total_checkins == 3
    assert after_gap.total_rewards == 300


@pytest.mark.asyncio
async def test_seven_day_streak_applies_bonus_multiplier(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(
        session_factory,
        min_reward=100,
        max_reward=100,
        continuous_bonus_enabled=True,
        continuous_bonus_days=7,
        continuous_bonus_multiplier=Decimal("1.5"),
    )
    user = await make_user(session_factory, username="weekly")

    rewards = []
    for offset in range(7):
        result = await _check_in(session_factory, user.id, START + timedelta(days=offset))
        rewards.append(result.reward_amount)

    assert rewards == [100, 100, 100, 100, 100, 100, 150]
    assert result.continuous_days == 7
    assert result.multiplier == Decimal("1.5")
    assert result.total_rewards == 750
    assert await _quota(session_factory, user.id) == 750


@pytest.mark.asyncio
async def test_disabled_checkin_is_rejected(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="closed")

    with pytest.raises(CheckInDisabled):
        await _check_in(session_factory, user.id, START)
    assert await _quota(session_factory, user.id) == 0


@pytest.mark.asyncio
async def test_verification_code_is_enforced(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(session_factory, verify_code_enabled=True, verify_code="sesame")
    user = await make_user(session_factory, username="verify")

    with pytest.raises(VerificationRequired):
        await _check_in(session_factory, user.id, START)
    with pytest.raises(VerificationCodeInvalid):
        await _check_in(session_factory, user.id, START, supplied_code="Sesame")

    result = await _check_in(session_factory, user.id, START, supplied_code="sesame")
    assert result.reward_amount == 100


@pytest.mark.asyncio
async def test_unknown_user_is_rejected(session_factory, enable_checkin) -> None:
    await enable_checkin(session_factory)

    with pytest.raises(UserNotFound):
        await _check_in(session_factory, uuid4(), START)


@pytest.mark.asyncio
async def test_status_reports_effective_streak(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(session_factory)
    user = await make_user(session_factory, username="status")
    await _check_in(session_factory, user.id, START)
    await _check_in(session_factory, user.id, START + timedelta(days=1))

    async with session_factory() as session:
        same_day = await CheckInService(session, clock=clock_for(START + timedelta(days=1))).get_status(user.id)
        next_day = await CheckInService(session, clock=clock_for(START + timedelta(days=2))).get_status(user.id)
        lapsed = await CheckInService(session, clock=clock_for(START + timedelta(days=3))).get_status(user.id)

    assert same_day.checked_in_today is True
    assert same_day.today_reward == 100
    assert same_day.continuous_days == 2
    assert next_day.checked_in_today is False
    assert next_day.continuous_days == 2
    assert lapsed.continuous_days == 0
    assert lapsed.total_checkins == 2
    assert lapsed.last_checkin == START + timedelta(days=1)


@pytest.mark.asyncio
async def test_history_views(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(session_factory)
    user = await make_user(session_factory, username="history")
    for day in (date(2026, 2, 27), date(2026, 2, 28), date(2026, 3, 1), date(2026, 3, 2)):
        await _check_in(session_factory, user.id, day)

    async with session_factory() as session:
        service = CheckInService(session, clock=clock_for(START))
        march = await service.month_history(user.id, 2026, 3)
        page_one, total = await service.paged_history(user.id, page=1, page_size=3)
        page_two, _ = await service.paged_history(user.id, page=2, page_size=3)
        audit_rows, audit_total = await service.all_records(page=1, page_size=10)

    assert [record.calendar_date for record in march] == [date(2026, 3, 1), date(2026, 3, 2)]
    assert total == 4
    assert [record.calendar_date for record in page_one] == [
        date(2026, 3, 2),
        date(2026, 3, 1),
        date(2026, 2, 28),
    ]
    assert [record.calendar_date for record in page_two] == [date(2026, 2, 27)]
    assert audit_total == 4
    assert audit_rows[0].username == "history"


@pytest.mark.asyncio
async def test_concurrent_checkins_grant_exactly_once(file_session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(file_session_factory, min_reward=5, max_reward=50)
    user = await make_user(file_session_factory, username="racer")

    async def attempt():
        try:
            return await _check_in(file_session_factory, user.id, START)
        except AlreadyCheckedInToday as error:
            return error

    outcomes = await asyncio.gather(*(attempt() for _ in range(10)))

    granted = [outcome for outcome in outcomes if not isinstance(outcome, AlreadyCheckedInToday)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, AlreadyCheckedInToday)]
    assert len(granted) == 1
    assert len(rejected) == 9
    assert all(error.details["rewardAmount"] == granted[0].reward_amount for error in rejected)
    assert await _quota(file_session_factory, user.id) == granted[0].reward_amount

    async with file_session_factory() as session:
        records = (await session.execute(select(func.count()).select_from(CheckInRecord))).scalar_one()
    assert records == 1


@pytest.mark.asyncio
async def test_calendar_day_follows_ledger_timezone(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(session_factory, min_reward=10, max_reward=10)
    user = await make_user(session_factory, username="shanghai")
    late_evening = datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)
    after_midnight = datetime(2026, 3, 10, 16, 30, tzinfo=timezone.utc)

    async with session_factory() as session:
        first = await CheckInService(session, clock=fixed_clock(late_evening, "Asia/Shanghai")).check_in(user.id)
    async with session_factory() as session:
        second = await CheckInService(session, clock=fixed_clock(after_midnight, "Asia/Shanghai")).check_in(user.id)

    assert first.calendar_date == date(2026, 3, 10)
    assert second.calendar_date == date(2026, 3, 11)
    assert second.continuous_days == 2

    # Same instant, but the UTC calendar is still on the 10th
    async with session_factory() as session:
        with pytest.raises(AlreadyCheckedInToday):
            await CheckInService(session, clock=fixed_clock(after_midnight, "UTC")).check_in(user.id)

    two_days_later = datetime(2026, 3, 12, 16, 30, tzinfo=timezone.utc)
    async with session_factory() as session:
        local_status = await CheckInService(session, clock=fixed_clock(two_days_later, "Asia/Shanghai")).get_status(
            user.id
        )
        utc_status = await CheckInService(session, clock=fixed_clock(two_days_later, "UTC")).get_status(user.id)

    assert local_status.continuous_days == 0
    assert utc_status.continuous_days == 2


def test_effective_streak_uses_local_calendar_dates() -> None:
    last = date(2026, 3, 11)
    moment = datetime(2026, 3, 12, 16, 30, tzinfo=timezone.utc)

    assert effective_streak(2, last, fixed_clock(moment, "UTC").today()) == 2
    assert effective_streak(2, last, fixed_clock(moment, "Asia/Shanghai").today()) == 0
    assert effective_streak(2, last, fixed_clock(moment - timedelta(hours=1), "Asia/Shanghai").today()) == 2


@pytest.mark.asyncio
async def test_user_with_ledger_history_cannot_be_deleted(session_factory, make_user, enable_checkin) -> None:
    await enable_checkin(session_factory, min_reward=10, max_reward=10)
    user = await make_user(session_factory, username="kept")
    await _check_in(session_factory, user.id, START)

    async with session_factory() as session:
        stored = await session.get(User, user.id)
        await session.delete(stored)
        with pytest.raises(IntegrityError):
            await session.commit()
        await session.rollback()

    async with session_factory() as session:
        records = await session.scalar(select(func.count()).select_from(CheckInRecord).where(CheckInRecord.user_id == user.id))
        grants = await session.scalar(select(func.count()).select_from(QuotaGrant).where(QuotaGrant.user_id == user.id))
        streak = await session.get(UserStreakState, user.id)

    assert records == 1
    assert grants == 1
    assert streak is not None and streak.continuous_days == 1

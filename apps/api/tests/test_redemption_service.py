import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from quota_ledger_api.models.quota import QuotaGrant
from quota_ledger_api.models.redemption import (
    RedemptionCode,
    RedemptionCodeStatus,
    RedemptionCodeType,
    RedemptionUsage,
)
from quota_ledger_api.models.user import User
from quota_ledger_api.services.clock import fixed_clock
from quota_ledger_api.services.errors import (
    CodeDisabled,
    CodeExhausted,
    CodeExpired,
    CodeNotFound,
    InvalidConfiguration,
    PerUserLimitExceeded,
)
from quota_ledger_api.services.redemption import RedemptionCodeStore, RedemptionService

NOW = datetime(2026, 5, 1, 9, tzinfo=timezone.utc)


async def _create_code(factory, **overrides) -> RedemptionCode:
    params = {"name": "launch", "count": 1, "quota": 500}
    params.update(overrides)
    async with factory() as session:
        codes = await RedemptionCodeStore(session, clock=fixed_clock(NOW)).create_codes(**params)
    return codes[0]


async def _redeem(factory, user_id, key, *, now: datetime = NOW, request_id=None):
    async with factory() as session:
        return await RedemptionService(session, clock=fixed_clock(now)).redeem(user_id, key, request_id=request_id)


async def _quota(factory, user_id) -> int:
    async with factory() as session:
        return (await session.execute(select(User.quota).where(User.id == user_id))).scalar_one()


async def _reload(factory, code_id) -> RedemptionCode:
    async with factory() as session:
        return (await session.execute(select(RedemptionCode).where(RedemptionCode.id == code_id))).scalar_one()


@pytest.mark.asyncio
async def test_normal_code_redeems_once(session_factory, make_user) -> None:
    first = await make_user(session_factory, username="alice")
    second = await make_user(session_factory, username="bob")
    code = await _create_code(session_factory, max_uses=10, max_uses_per_user=10)

    assert code.max_uses == 1
    assert code.max_uses_per_user == 1
    assert len(code.key) == 32

    result = await _redeem(session_factory, first.id, code.key)

    assert result.credited_quota == 500
    assert result.remaining_uses == 0
    assert result.status == RedemptionCodeStatus.USED
    assert result.code_type == RedemptionCodeType.NORMAL
    assert result.replayed is False
    assert await _quota(session_factory, first.id) == 500

    with pytest.raises(CodeExhausted):
        await _redeem(session_factory, second.id, code.key)
    assert await _quota(session_factory, second.id) == 0


@pytest.mark.asyncio
async def test_unknown_code_is_not_found(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="carol")

    with pytest.raises(CodeNotFound):
        await _redeem(session_factory, user.id, "0" * 32)
    with pytest.raises(CodeNotFound):
        await _redeem(session_factory, user.id, "   ")


@pytest.mark.asyncio
async def test_gift_code_enforces_per_user_cap(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="dave")
    code = await _create_code(
        session_factory,
        code_type=RedemptionCodeType.GIFT,
        quota=50,
        max_uses=5,
        max_uses_per_user=2,
    )

    first = await _redeem(session_factory, user.id, code.key)
    second = await _redeem(session_factory, user.id, code.key)
    with pytest.raises(PerUserLimitExceeded):
        await _redeem(session_factory, user.id, code.key)

    assert first.remaining_user_uses == 1
    assert second.remaining_user_uses == 0
    assert second.remaining_uses == 3
    assert second.status == RedemptionCodeStatus.UNUSED
    assert await _quota(session_factory, user.id) == 100

    stored = await _reload(session_factory, code.id)
    assert stored.used_count == 2
    assert stored.used_user_count == 1


@pytest.mark.asyncio
async def test_disabled_takes_precedence_over_expiry(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="erin")
    expires = int((NOW + timedelta(hours=1)).timestamp())
    code = await _create_code(session_factory, expired_time=expires)
    async with session_factory() as session:
        await RedemptionCodeStore(session).disable_code(code.id)

    later = NOW + timedelta(days=1)
    with pytest.raises(CodeDisabled):
        await _redeem(session_factory, user.id, code.key, now=later)


@pytest.mark.asyncio
async def test_expiry_takes_precedence_over_exhaustion(session_factory, make_user) -> None:
    first = await make_user(session_factory, username="frank")
    second = await make_user(session_factory, username="grace")
    expires = int((NOW + timedelta(hours=1)).timestamp())
    code = await _create_code(session_factory, expired_time=expires)
    await _redeem(session_factory, first.id, code.key)

    with pytest.raises(CodeExpired):
        await _redeem(session_factory, second.id, code.key, now=NOW + timedelta(hours=2))


@pytest.mark.asyncio
async def test_expired_code_cannot_be_redeemed(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="heidi")
    expires = int((NOW + timedelta(minutes=5)).timestamp())
    code = await _create_code(session_factory, expired_time=expires)

    with pytest.raises(CodeExpired):
        await _redeem(session_factory, user.id, code.key, now=NOW + timedelta(minutes=6))
    assert (await _reload(session_factory, code.id)).used_count == 0


@pytest.mark.asyncio
async def test_request_id_replays_original_result(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="ivan")
    code = await _create_code(
        session_factory,
        code_type=RedemptionCodeType.GIFT,
        quota=70,
        max_uses=3,
        max_uses_per_user=3,
    )

    original = await _redeem(session_factory, user.id, code.key, request_id="req-1")
    replay = await _redeem(session_factory, user.id, code.key, request_id="req-1")
    fresh = await _redeem(session_factory, user.id, code.key, request_id="req-2")

    assert original.replayed is False
    assert replay.replayed is True
    assert replay.credited_quota == original.credited_quota
    assert fresh.replayed is False
    assert await _quota(session_factory, user.id) == 140
    assert (await _reload(session_factory, code.id)).used_count == 2


@pytest.mark.asyncio
async def test_validate_reports_redeemability(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="judy")
    other = await make_user(session_factory, username="kim")
    code = await _create_code(session_factory)

    async with session_factory() as session:
        before = await RedemptionService(session, clock=fixed_clock(NOW)).validate(user.id, code.key)
    await _redeem(session_factory, other.id, code.key)
    async with session_factory() as session:
        after = await RedemptionService(session, clock=fixed_clock(NOW)).validate(user.id, code.key)

    assert before.redeemable is True
    assert before.error is None
    assert before.remaining_uses == 1
    assert after.redeemable is False
    assert isinstance(after.error, CodeExhausted)


@pytest.mark.asyncio
async def test_twenty_concurrent_redeemers_share_five_uses(file_session_factory, make_user) -> None:
    users = [await make_user(file_session_factory, username=f"user{index}") for index in range(20)]
    code = await _create_code(
        file_session_factory,
        code_type=RedemptionCodeType.GIFT,
        quota=25,
        max_uses=5,
        max_uses_per_user=1,
    )

    async def attempt(user):
        try:
            return await _redeem(file_session_factory, user.id, code.key)
        except CodeExhausted as error:
            return error

    outcomes = await asyncio.gather(*(attempt(user) for user in users))

    successes = [outcome for outcome in outcomes if not isinstance(outcome, CodeExhausted)]
    assert len(successes) == 5
    assert sum(isinstance(outcome, CodeExhausted) for outcome in outcomes) == 15

    stored = await _reload(file_session_factory, code.id)
    assert stored.used_count == 5
    assert stored.used_user_count == 5
    assert stored.status == RedemptionCodeStatus.USED

    async with file_session_factory() as session:
        usage_total = (await session.execute(select(func.sum(RedemptionUsage.used_count_by_user)))).scalar_one()
        granted = (await session.execute(select(func.sum(QuotaGrant.amount)))).scalar_one()
        credited = (await session.execute(select(func.sum(User.quota)))).scalar_one()
    assert usage_total == 5
    assert granted == 125
    assert credited == 125


@pytest.mark.asyncio
async def test_disable_and_enable_transitions(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="leo")
    open_code = await _create_code(session_factory, name="toggle")
    spent_code = await _create_code(session_factory, name="spent")
    await _redeem(session_factory, user.id, spent_code.key)

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW))
        disabled = await store.disable_code(open_code.id)
        assert disabled.status == RedemptionCodeStatus.DISABLED
        reenabled = await store.enable_code(open_code.id)
        assert reenabled.status == RedemptionCodeStatus.UNUSED

        await store.disable_code(spent_code.id)
        restored = await store.enable_code(spent_code.id)
        assert restored.status == RedemptionCodeStatus.USED


@pytest.mark.asyncio
async def test_delete_invalid_codes_keeps_redeemable_ones(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="mia")
    keep = await _create_code(session_factory, name="keep")
    used = await _create_code(session_factory, name="used")
    disabled = await _create_code(session_factory, name="disabled")
    expiring = await _create_code(session_factory, name="expiring", expired_time=int(NOW.timestamp()) + 60)
    await _redeem(session_factory, user.id, used.key)

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW))
        await store.disable_code(disabled.id)

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW + timedelta(minutes=5)))
        deleted = await store.delete_invalid_codes()

    assert deleted == 3
    async with session_factory() as session:
        remaining = (await session.execute(select(RedemptionCode.id))).scalars().all()
        usages = (await session.execute(select(func.count()).select_from(RedemptionUsage))).scalar_one()
    assert remaining == [keep.id]
    assert expiring.id not in remaining
    assert usages == 0


@pytest.mark.asyncio
async def test_admin_listing_search_and_grouping(session_factory) -> None:
    batch = await _create_code(session_factory, name="spring-promo", count=3)
    await _create_code(session_factory, name="vip", quota=1000)

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW))
        listed, total = await store.list_codes(page=1, page_size=10)
        found, found_total = await store.search_codes("spring", page=1, page_size=10)
        by_id, _ = await store.search_codes(str(batch.id), page=1, page_size=10)
        groups, group_total = await store.list_grouped_by_name(page=1, page_size=10)

    assert total == 4
    assert len(listed) == 4
    assert found_total == 3
    assert {code.name for code in found} == {"spring-promo"}
    assert [code.id for code in by_id] == [batch.id]
    assert group_total == 2
    spring = next(group for group in groups if group.name == "spring-promo")
    assert spring.total == 3
    assert spring.unused == 3
    assert spring.quota_total == 1500


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"name": ""},
        {"count": 0},
        {"quota": 0},
        {"expired_time": 1},
        {"code_type": RedemptionCodeType.GIFT, "max_uses": 2, "max_uses_per_user": 3},
    ],
)
async def test_create_codes_validates_input(session_factory, overrides) -> None:
    with pytest.raises(InvalidConfiguration):
        await _create_code(session_factory, **overrides)


@pytest.mark.asyncio
async def test_same_user_concurrent_redeems_respect_per_user_cap(file_session_factory, make_user) -> None:
    user = await make_user(file_session_factory, username="eager")
    code = await _create_code(
        file_session_factory,
        code_type=RedemptionCodeType.GIFT,
        quota=10,
        max_uses=10,
        max_uses_per_user=2,
    )

    async def attempt():
        try:
            return await _redeem(file_session_factory, user.id, code.key)
        except PerUserLimitExceeded as error:
            return error

    outcomes = await asyncio.gather(*(attempt() for _ in range(8)))

    assert sum(not isinstance(outcome, PerUserLimitExceeded) for outcome in outcomes) == 2
    assert sum(isinstance(outcome, PerUserLimitExceeded) for outcome in outcomes) == 6

    stored = await _reload(file_session_factory, code.id)
    assert stored.used_count == 2
    assert stored.used_user_count == 1
    assert stored.status == RedemptionCodeStatus.UNUSED
    async with file_session_factory() as session:
        usage = (await session.execute(select(RedemptionUsage))).scalar_one()
    assert usage.used_count_by_user == 2
    assert await _quota(file_session_factory, user.id) == 20


@pytest.mark.asyncio
async def test_update_code_recomputes_status_from_limits(session_factory, make_user) -> None:
    first = await make_user(session_factory, username="first")
    second = await make_user(session_factory, username="second")
    code = await _create_code(
        session_factory,
        name="gift",
        code_type=RedemptionCodeType.GIFT,
        max_uses=5,
        max_uses_per_user=1,
    )
    await _redeem(session_factory, first.id, code.key)
    await _redeem(session_factory, second.id, code.key)

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW))
        capped = await store.update_code(code.id, max_uses=2, name="gift-renamed", quota=750)
        assert capped.status == RedemptionCodeStatus.USED
        assert capped.name == "gift-renamed"
        assert capped.quota == 750

        reopened = await store.update_code(code.id, max_uses=4)
        assert reopened.status == RedemptionCodeStatus.UNUSED
        assert reopened.max_uses == 4

        with pytest.raises(InvalidConfiguration) as excinfo:
            await store.update_code(code.id, max_uses=1)
        assert excinfo.value.details["usedCount"] == 2

        with pytest.raises(InvalidConfiguration):
            await store.update_code(code.id, max_uses_per_user=5)

    stored = await _reload(session_factory, code.id)
    assert stored.max_uses == 4
    assert stored.used_count == 2


@pytest.mark.asyncio
async def test_update_code_keeps_normal_codes_single_use(session_factory) -> None:
    code = await _create_code(session_factory, name="single")

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW))
        updated = await store.update_code(code.id, max_uses=5, max_uses_per_user=3, expired_time=0)
        assert updated.max_uses == 1
        assert updated.max_uses_per_user == 1
        assert updated.status == RedemptionCodeStatus.UNUSED

        with pytest.raises(InvalidConfiguration):
            await store.update_code(code.id, expired_time=int(NOW.timestamp()) - 1)


@pytest.mark.asyncio
async def test_update_code_keeps_disabled_status(session_factory) -> None:
    code = await _create_code(session_factory, name="paused", code_type=RedemptionCodeType.GIFT, max_uses=3)

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW))
        await store.disable_code(code.id)
        updated = await store.update_code(code.id, max_uses=6)

    assert updated.status == RedemptionCodeStatus.DISABLED
    assert updated.max_uses == 6


@pytest.mark.asyncio
async def test_delete_code_and_delete_by_name(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="nora")
    single = await _create_code(session_factory, name="one-off")
    await _create_code(session_factory, name="batch", count=3)
    await _create_code(session_factory, name="batch-2")
    await _redeem(session_factory, user.id, single.key)

    async with session_factory() as session:
        store = RedemptionCodeStore(session, clock=fixed_clock(NOW))
        await store.delete_code(single.id)
        with pytest.raises(CodeNotFound):
            await store.delete_code(single.id)
        with pytest.raises(InvalidConfiguration):
            await store.delete_codes_by_name("  ")
        deleted = await store.delete_codes_by_name("batch")

    assert deleted == 3
    async with session_factory() as session:
        names = (await session.execute(select(RedemptionCode.name))).scalars().all()
        usages = (await session.execute(select(func.count()).select_from(RedemptionUsage))).scalar_one()
        grants = (await session.execute(select(func.count()).select_from(QuotaGrant))).scalar_one()
    assert names == ["batch-2"]
    assert usages == 0
    assert grants == 1
    assert await _quota(session_factory, user.id) == 500

import pytest
from sqlalchemy import update

from quota_ledger_api.models.settings import SettingSnapshot
from quota_ledger_api.services.checkin import CheckInConfigService
from quota_ledger_api.services.errors import ConcurrencyConflict, InvalidConfiguration
from quota_ledger_api.services.settings import SettingsSnapshotStore


@pytest.mark.asyncio
async def test_unwritten_key_returns_default_at_version_zero(session_factory) -> None:
    async with session_factory() as session:
        snapshot = await SettingsSnapshotStore(session).read("missing", default={"a": 1})

    assert snapshot.version == 0
    assert snapshot.value == {"a": 1}


@pytest.mark.asyncio
async def test_writes_bump_version_and_support_compare_and_swap(session_factory) -> None:
    async with session_factory() as session:
        store = SettingsSnapshotStore(session)
        first = await store.write("feature", {"on": True})
        second = await store.write("feature", {"on": False}, expected_version=1)
        third = await store.write("feature", {"on": True})

        with pytest.raises(ConcurrencyConflict) as excinfo:
            await store.write("feature", {"on": False}, expected_version=1)

        current = await store.read("feature", use_cache=False)

    assert (first.version, second.version, third.version) == (1, 2, 3)
    assert excinfo.value.details["currentVersion"] == 3
    assert current.version == 3
    assert current.value == {"on": True}


@pytest.mark.asyncio
async def test_reads_are_served_from_cache_within_ttl(session_factory) -> None:
    async with session_factory() as session:
        store = SettingsSnapshotStore(session, cache_ttl_seconds=60)
        await store.write("cached", {"value": 1})

        await session.execute(update(SettingSnapshot).where(SettingSnapshot.key == "cached").values(value={"value": 2}))
        await session.commit()

        cached = await store.read("cached")
        fresh = await store.read("cached", use_cache=False)

    assert cached.value == {"value": 1}
    assert fresh.value == {"value": 2}


@pytest.mark.asyncio
async def test_checkin_config_update_merges_and_validates(session_factory) -> None:
    async with session_factory() as session:
        service = CheckInConfigService(session)
        config, version = await service.update({"enabled": True, "max_reward": 300})

        with pytest.raises(InvalidConfiguration):
            await service.update({"min_reward": 400})

        stored, stored_version = await service.load(use_cache=False)

    assert version == 1
    assert config.enabled is True
    assert config.min_reward == 100
    assert config.max_reward == 300
    assert stored == config
    assert stored_version == 1


@pytest.mark.asyncio
async def test_checkin_config_rejects_stale_version(session_factory) -> None:
    async with session_factory() as session:
        service = CheckInConfigService(session)
        await service.update({"enabled": True})
        await service.update({"min_reward": 50}, expected_version=1)

        with pytest.raises(ConcurrencyConflict):
            await service.update({"min_reward": 60}, expected_version=1)

        config, version = await service.load(use_cache=False)

    assert version == 2
    assert config.min_reward == 50

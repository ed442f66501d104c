import pytest

from quota_ledger_api.core.settings import settings
from quota_ledger_api.models.user import User
from quota_ledger_api.services.errors import InvalidConfiguration
from quota_ledger_api.services.settings import GroupVisibilityService


CATALOG = {"default": "Default", "vip": "VIP members", "svip": "Super VIP", "beta": "Beta testers"}


@pytest.mark.asyncio
async def test_visibility_map_rejects_unknown_groups(session_factory) -> None:
    async with session_factory() as session:
        service = GroupVisibilityService(session)
        await service.update_catalog(CATALOG)

        with pytest.raises(InvalidConfiguration) as excinfo:
            await service.update_visibility({"vip": ["svip", "platinum"], "ghost": []})

        mapping, version = await service.get_visibility()

    assert excinfo.value.details["unknownGroups"] == ["ghost", "platinum"]
    assert mapping.as_payload() == {}
    assert version == 0


@pytest.mark.asyncio
async def test_usable_groups_union(session_factory, make_user) -> None:
    user = await make_user(session_factory, username="grouped", group="vip", extra_groups=["beta"])

    async with session_factory() as session:
        service = GroupVisibilityService(session)
        await service.update_catalog(CATALOG)
        mapping, version = await service.update_visibility({"vip": ["svip", "svip"]})
        member = await session.get(User, user.id)
        usable = await service.usable_groups(member)

    assert version == 1
    assert mapping.for_group("vip") == ("svip",)
    assert list(usable) == ["vip", "svip", "beta", *settings.always_usable_groups]
    assert usable["svip"] == "Super VIP"


@pytest.mark.asyncio
async def test_catalog_update_cannot_orphan_visibility(session_factory) -> None:
    async with session_factory() as session:
        service = GroupVisibilityService(session)
        await service.update_catalog(CATALOG)
        await service.update_visibility({"vip": ["svip"]})

        with pytest.raises(InvalidConfiguration):
            await service.update_catalog({"default": "Default", "vip": "VIP members"})

        catalog, _ = await service.get_catalog()

    assert "svip" in catalog


@pytest.mark.asyncio
async def test_default_catalog_when_unconfigured(session_factory) -> None:
    async with session_factory() as session:
        catalog, version = await GroupVisibilityService(session).get_catalog()

    assert catalog.names() == ["default"]
    assert version == 0

"""Group catalog and the group-visibility mapping members choose from."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.models.user import User
from quota_ledger_api.services.errors import InvalidConfiguration
from quota_ledger_api.services.settings.snapshots import SettingsSnapshotStore

GROUP_CATALOG_KEY = "group_catalog"
GROUP_VISIBILITY_KEY = "group_visibility"

DEFAULT_GROUP_CATALOG = {"default": "Default group"}


@dataclass(frozen=True)
class GroupCatalog:
    """Known groups and their human readable descriptions."""

    descriptions: dict[str, str]

    @classmethod
    def from_payload(cls, payload: Any) -> "GroupCatalog":
        if not isinstance(payload, Mapping):
            raise InvalidConfiguration("Group catalog must be an object of group -> description")
        descriptions: dict[str, str] = {}
        for name, description in payload.items():
            group = str(name).strip()
            if not group:
                raise InvalidConfiguration("Group names must not be empty")
            descriptions[group] = "" if description is None else str(description)
        if not descriptions:
            raise InvalidConfiguration("Group catalog must contain at least one group")
        return cls(descriptions=descriptions)

    def __contains__(self, group: object) -> bool:
        return group in self.descriptions

    def names(self) -> list[str]:
        return sorted(self.descriptions)

    def describe(self, group: str) -> str:
        return self.descriptions.get(group, "")


@dataclass(frozen=True)
class GroupVisibilityMap:
    """Which groups the members of each group may select.

    Keys and values must all be catalog groups; an unknown name anywhere in the
    mapping rejects the whole map.
    """

    visible: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any, catalog: GroupCatalog) -> "GroupVisibilityMap":
        if not isinstance(payload, Mapping):
            raise InvalidConfiguration("Group visibility must be an object of group -> [groups]")

        unknown: set[str] = set()
        visible: dict[str, tuple[str, ...]] = {}
        for owner, targets in payload.items():
            owner_name = str(owner).strip()
            if owner_name not in catalog:
                unknown.add(owner_name)
            if isinstance(targets, str) or not isinstance(targets, Iterable):
                raise InvalidConfiguration(
                    "Visible groups must be a list of group names",
                    group=owner_name,
                )
            names: list[str] = []
            for target in targets:
                target_name = str(target).strip()
                if target_name not in catalog:
                    unknown.add(target_name)
                elif target_name not in names:
                    names.append(target_name)
            visible[owner_name] = tuple(names)

        if unknown:
            raise InvalidConfiguration(
                "Group visibility references unknown groups",
                unknownGroups=sorted(unknown),
            )
        return cls(visible=visible)

    def for_group(self, group: str) -> tuple[str, ...]:
        return self.visible.get(group, ())

    def as_payload(self) -> dict[str, list[str]]:
        return {group: list(targets) for group, targets in self.visible.items()}


class GroupVisibilityService:
    def __init__(self, session: AsyncSession, *, store: SettingsSnapshotStore | None = None) -> None:
        self._store = store or SettingsSnapshotStore(session)

    async def get_catalog(self) -> tuple[GroupCatalog, int]:
        snapshot = await self._store.read(GROUP_CATALOG_KEY, default=DEFAULT_GROUP_CATALOG)
        return GroupCatalog.from_payload(snapshot.value or DEFAULT_GROUP_CATALOG), snapshot.version

    async def update_catalog(
        self,
        payload: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> tuple[GroupCatalog, int]:
        catalog = GroupCatalog.from_payload(payload)
        visibility, _ = await self.get_visibility()
        # Re-validate against the new catalog so no mapping is left dangling
        GroupVisibilityMap.from_payload(visibility.as_payload(), catalog)
        snapshot = await self._store.write(
            GROUP_CATALOG_KEY,
            catalog.descriptions,
            expected_version=expected_version,
        )
        return catalog, snapshot.version

    async def get_visibility(self) -> tuple[GroupVisibilityMap, int]:
        catalog, _ = await self.get_catalog()
        snapshot = await self._store.read(GROUP_VISIBILITY_KEY, default={})
        return GroupVisibilityMap.from_payload(snapshot.value or {}, catalog), snapshot.version

    async def update_visibility(
        self,
        payload: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> tuple[GroupVisibilityMap, int]:
        catalog, _ = await self.get_catalog()
        mapping = GroupVisibilityMap.from_payload(payload, catalog)
        snapshot = await self._store.write(
            GROUP_VISIBILITY_KEY,
            mapping.as_payload(),
            expected_version=expected_version,
        )
        return mapping, snapshot.version

    async def usable_groups(self, user: User) -> dict[str, str]:
        """Groups ``user`` may select, each with its catalog description."""

        catalog, _ = await self.get_catalog()
        visibility, _ = await self.get_visibility()

        ordered: list[str] = [user.group]
        ordered.extend(visibility.for_group(user.group))
        ordered.extend(str(group) for group in (user.extra_groups or []))
        ordered.extend(settings.always_usable_groups)

        usable: dict[str, str] = {}
        for group in ordered:
            if group and group not in usable:
                usable[group] = catalog.describe(group)
        return usable


__all__ = [
    "DEFAULT_GROUP_CATALOG",
    "GROUP_CATALOG_KEY",
    "GROUP_VISIBILITY_KEY",
    "GroupCatalog",
    "GroupVisibilityMap",
    "GroupVisibilityService",
]

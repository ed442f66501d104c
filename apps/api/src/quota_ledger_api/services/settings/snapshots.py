"""Versioned JSON settings with compare-and-swap writes and a short-lived cache."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.models.settings import SettingSnapshot
from quota_ledger_api.services.errors import ConcurrencyConflict


@dataclass(frozen=True, slots=True)
class SettingsSnapshot:
    """Immutable view of one settings key. ``version`` is 0 when never written."""

    key: str
    value: Any
    version: int
    updated_at: datetime | None = None


class _SnapshotCache:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, tuple[float, SettingsSnapshot]] = {}

    def get(self, key: str, ttl_seconds: float) -> SettingsSnapshot | None:
        if ttl_seconds <= 0:
            return None
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, snapshot = entry
        if time.monotonic() - stored_at > ttl_seconds:
            return None
        return snapshot

    def put(self, snapshot: SettingsSnapshot) -> None:
        with self._lock:
            self._entries[snapshot.key] = (time.monotonic(), snapshot)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_CACHE = _SnapshotCache()


def reset_snapshot_cache() -> None:
    _CACHE.clear()


class SettingsSnapshotStore:
    """Read and write :class:`SettingSnapshot` rows.

    Reads may be served from the process cache for up to
    ``config_cache_ttl_seconds``. Writes bump ``version`` and commit
    immediately; passing ``expected_version`` turns the write into a
    compare-and-swap that raises :class:`ConcurrencyConflict` on mismatch.
    """

    def __init__(self, session: AsyncSession, *, cache_ttl_seconds: float | None = None) -> None:
        self._db = session
        self._ttl = settings.config_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds

    async def read(self, key: str, *, default: Any = None, use_cache: bool = True) -> SettingsSnapshot:
        if use_cache:
            cached = _CACHE.get(key, self._ttl)
            if cached is not None:
                return cached

        stmt = select(SettingSnapshot).where(SettingSnapshot.key == key).execution_options(populate_existing=True)
        row = (await self._db.execute(stmt)).scalar_one_or_none()
        if row is None:
            snapshot = SettingsSnapshot(key=key, value=copy.deepcopy(default), version=0)
        else:
            snapshot = SettingsSnapshot(
                key=key,
                value=copy.deepcopy(row.value),
                version=row.version,
                updated_at=row.updated_at,
            )
        _CACHE.put(snapshot)
        return snapshot

    async def write(self, key: str, value: Any, *, expected_version: int | None = None) -> SettingsSnapshot:
        now = datetime.now(timezone.utc)
        current = await self.read(key, use_cache=False)

        if expected_version is not None and expected_version != current.version:
            await self._db.rollback()
            raise ConcurrencyConflict(
                "Settings were changed by someone else",
                key=key,
                expectedVersion=expected_version,
                currentVersion=current.version,
            )

        try:
            if current.version == 0:
                self._db.add(SettingSnapshot(key=key, value=value, version=1, updated_at=now))
                await self._db.flush()
                new_version = 1
            else:
                stmt = (
                    update(SettingSnapshot)
                    .where(SettingSnapshot.key == key, SettingSnapshot.version == current.version)
                    .values(value=value, version=current.version + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                result = await self._db.execute(stmt)
                if result.rowcount == 0:
                    raise ConcurrencyConflict("Settings were changed by someone else", key=key)
                new_version = current.version + 1
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise ConcurrencyConflict("Settings were changed by someone else", key=key) from exc
        except ConcurrencyConflict:
            await self._db.rollback()
            raise
        finally:
            _CACHE.invalidate(key)

        snapshot = SettingsSnapshot(key=key, value=copy.deepcopy(value), version=new_version, updated_at=now)
        _CACHE.put(snapshot)
        logger.info("Settings snapshot updated", key=key, version=new_version)
        return snapshot


__all__ = ["SettingsSnapshot", "SettingsSnapshotStore", "reset_snapshot_cache"]

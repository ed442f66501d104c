"""Check-in configuration stored as a versioned settings snapshot."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.services.errors import InvalidConfiguration
from quota_ledger_api.services.settings.snapshots import SettingsSnapshotStore

CHECKIN_CONFIG_KEY = "checkin_setting"


class CheckInConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = False
    min_reward: int = 100
    max_reward: int = 100
    verify_code_enabled: bool = False
    verify_code: str = ""
    continuous_bonus_enabled: bool = False
    continuous_bonus_days: int = 7
    continuous_bonus_multiplier: Decimal = Decimal("1.0")

    @model_validator(mode="after")
    def _check_bounds(self) -> "CheckInConfig":
        if self.min_reward < 0:
            raise ValueError("min_reward must not be negative")
        if self.min_reward > self.max_reward:
            raise ValueError("min_reward must not exceed max_reward")
        if self.continuous_bonus_days < 2:
            raise ValueError("continuous_bonus_days must be at least 2")
        if self.continuous_bonus_multiplier < 1:
            raise ValueError("continuous_bonus_multiplier must be at least 1")
        return self

    def public_view(self) -> dict[str, Any]:
        """Member-facing fields; the verification code itself is never exposed."""

        return self.model_dump(exclude={"verify_code"})


def parse_checkin_config(payload: dict[str, Any]) -> CheckInConfig:
    try:
        return CheckInConfig.model_validate(payload)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise InvalidConfiguration("; ".join(problems), problems=problems) from exc


class CheckInConfigService:
    """Load and update the check-in configuration snapshot."""

    def __init__(self, session: AsyncSession, *, store: SettingsSnapshotStore | None = None) -> None:
        self._store = store or SettingsSnapshotStore(session)

    async def load(self, *, use_cache: bool = True) -> tuple[CheckInConfig, int]:
        snapshot = await self._store.read(CHECKIN_CONFIG_KEY, default={}, use_cache=use_cache)
        return parse_checkin_config(snapshot.value or {}), snapshot.version

    async def update(
        self,
        changes: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> tuple[CheckInConfig, int]:
        """Merge ``changes`` over the stored config, validate, then persist."""

        current, _version = await self.load(use_cache=False)
        merged = current.model_dump()
        merged.update({key: value for key, value in changes.items() if value is not None})
        config = parse_checkin_config(merged)

        snapshot = await self._store.write(
            CHECKIN_CONFIG_KEY,
            config.model_dump(mode="json"),
            expected_version=expected_version,
        )
        return config, snapshot.version


__all__ = ["CHECKIN_CONFIG_KEY", "CheckInConfig", "CheckInConfigService", "parse_checkin_config"]

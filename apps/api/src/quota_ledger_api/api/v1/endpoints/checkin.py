"""API endpoints for daily check-in, history and the leaderboard."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.api.dependencies.session import require_admin_session, require_member_session
from quota_ledger_api.api.errors import ledger_http_error
from quota_ledger_api.core.settings import settings
from quota_ledger_api.db.session import get_session
from quota_ledger_api.models.checkin import CheckInRecord
from quota_ledger_api.models.user import User
from quota_ledger_api.services.checkin import (
    CheckInConfig,
    CheckInConfigService,
    CheckInService,
    LeaderboardAggregator,
)
from quota_ledger_api.services.errors import LedgerError


router = APIRouter(prefix="/checkin", tags=["checkin"])


class CheckInConfigResponse(BaseModel):
    enabled: bool
    minReward: int
    maxReward: int
    verifyCodeEnabled: bool
    continuousBonusEnabled: bool
    continuousBonusDays: int
    continuousBonusMultiplier: float
    version: int


class CheckInAdminConfigResponse(CheckInConfigResponse):
    verifyCode: str


class CheckInConfigUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    minReward: Optional[int] = None
    maxReward: Optional[int] = None
    verifyCodeEnabled: Optional[bool] = None
    verifyCode: Optional[str] = None
    continuousBonusEnabled: Optional[bool] = None
    continuousBonusDays: Optional[int] = None
    continuousBonusMultiplier: Optional[float] = None
    expectedVersion: Optional[int] = Field(None, description="Reject the update if the stored version differs")


class CheckInRequest(BaseModel):
    verifyCode: Optional[str] = Field(None, description="Verification code when the operator requires one")


class CheckInResponse(BaseModel):
    rewardAmount: int
    continuousDays: int
    totalCheckins: int
    totalRewards: int
    calendarDate: date
    bonusMultiplier: float


class CheckInStatusResponse(BaseModel):
    checkedInToday: bool
    continuousDays: int
    totalCheckins: int
    totalRewards: int
    lastCheckin: Optional[date]
    todayReward: Optional[int]


class CheckInRecordResponse(BaseModel):
    id: UUID
    calendarDate: date
    rewardAmount: int
    continuousDays: int
    grantedAt: datetime


class CheckInHistoryResponse(BaseModel):
    records: List[CheckInRecordResponse]
    total: int
    page: Optional[int] = None
    pageSize: Optional[int] = None


class CheckInAuditRecordResponse(CheckInRecordResponse):
    userId: UUID
    username: Optional[str]
    email: Optional[str]


class CheckInAuditResponse(BaseModel):
    records: List[CheckInAuditRecordResponse]
    total: int
    page: int
    pageSize: int


class LeaderboardEntryResponse(BaseModel):
    rank: int
    userId: UUID
    username: Optional[str]
    totalCheckins: int
    continuousDays: int
    totalRewards: int
    lastCheckinDate: Optional[date]


class LeaderboardResponse(BaseModel):
    entries: List[LeaderboardEntryResponse]
    generatedAt: datetime


def _config_payload(config: CheckInConfig, version: int) -> dict[str, object]:
    return {
        "enabled": config.enabled,
        "minReward": config.min_reward,
        "maxReward": config.max_reward,
        "verifyCodeEnabled": config.verify_code_enabled,
        "continuousBonusEnabled": config.continuous_bonus_enabled,
        "continuousBonusDays": config.continuous_bonus_days,
        "continuousBonusMultiplier": float(config.continuous_bonus_multiplier),
        "version": version,
    }


def _record_payload(record: CheckInRecord) -> dict[str, object]:
    return {
        "id": record.id,
        "calendarDate": record.calendar_date,
        "rewardAmount": record.reward_amount,
        "continuousDays": record.streak_length_at_grant,
        "grantedAt": record.granted_at,
    }


@router.get("/config", response_model=CheckInConfigResponse)
async def get_checkin_config(
    _user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> CheckInConfigResponse:
    """Member-facing configuration; the verification code is never returned."""

    config, version = await CheckInConfigService(db).load()
    return CheckInConfigResponse(**_config_payload(config, version))


@router.put("/config", response_model=CheckInAdminConfigResponse)
async def update_checkin_config(
    payload: CheckInConfigUpdateRequest,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> CheckInAdminConfigResponse:
    changes = {
        "enabled": payload.enabled,
        "min_reward": payload.minReward,
        "max_reward": payload.maxReward,
        "verify_code_enabled": payload.verifyCodeEnabled,
        "verify_code": payload.verifyCode,
        "continuous_bonus_enabled": payload.continuousBonusEnabled,
        "continuous_bonus_days": payload.continuousBonusDays,
        "continuous_bonus_multiplier": (
            str(payload.continuousBonusMultiplier) if payload.continuousBonusMultiplier is not None else None
        ),
    }
    try:
        config, version = await CheckInConfigService(db).update(changes, expected_version=payload.expectedVersion)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return CheckInAdminConfigResponse(**_config_payload(config, version), verifyCode=config.verify_code)


@router.get("/status", response_model=CheckInStatusResponse)
async def get_checkin_status(
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> CheckInStatusResponse:
    current = await CheckInService(db).get_status(user.id)
    return CheckInStatusResponse(
        checkedInToday=current.checked_in_today,
        continuousDays=current.continuous_days,
        totalCheckins=current.total_checkins,
        totalRewards=current.total_rewards,
        lastCheckin=current.last_checkin,
        todayReward=current.today_reward,
    )


@router.get("/history", response_model=CheckInHistoryResponse)
async def get_checkin_history(
    year: Optional[int] = Query(None, ge=1970, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1),
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> CheckInHistoryResponse:
    """Month calendar when ``year`` and ``month`` are given, otherwise newest-first pages."""

    service = CheckInService(db)
    if (year is None) != (month is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="year and month must be provided together",
        )
    if year is not None and month is not None:
        records = await service.month_history(user.id, year, month)
        return CheckInHistoryResponse(
            records=[CheckInRecordResponse(**_record_payload(record)) for record in records],
            total=len(records),
        )

    size = min(page_size or settings.checkin_history_default_page_size, settings.checkin_history_max_page_size)
    records, total = await service.paged_history(user.id, page=page, page_size=size)
    return CheckInHistoryResponse(
        records=[CheckInRecordResponse(**_record_payload(record)) for record in records],
        total=total,
        page=page,
        pageSize=size,
    )


@router.post("/", response_model=CheckInResponse)
async def perform_checkin(
    payload: CheckInRequest | None = None,
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> CheckInResponse:
    """Check in for today in the server timezone."""

    supplied_code = payload.verifyCode if payload else None
    try:
        result = await CheckInService(db).check_in(user.id, supplied_code=supplied_code)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return CheckInResponse(
        rewardAmount=result.reward_amount,
        continuousDays=result.continuous_days,
        totalCheckins=result.total_checkins,
        totalRewards=result.total_rewards,
        calendarDate=result.calendar_date,
        bonusMultiplier=float(result.multiplier),
    )


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    limit: Optional[int] = Query(None, ge=1),
    _user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LeaderboardResponse:
    snapshot = await LeaderboardAggregator(db).top_n(limit)
    return LeaderboardResponse(
        entries=[
            LeaderboardEntryResponse(
                rank=entry.rank,
                userId=entry.user_id,
                username=entry.username,
                totalCheckins=entry.total_checkins,
                continuousDays=entry.continuous_days,
                totalRewards=entry.total_rewards,
                lastCheckinDate=entry.last_checkin_date,
            )
            for entry in snapshot.entries
        ],
        generatedAt=snapshot.generated_at,
    )


@router.get("/all", response_model=CheckInAuditResponse)
async def list_all_checkins(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1),
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> CheckInAuditResponse:
    size = min(page_size or settings.checkin_history_default_page_size, settings.checkin_history_max_page_size)
    rows, total = await CheckInService(db).all_records(page=page, page_size=size)
    return CheckInAuditResponse(
        records=[
            CheckInAuditRecordResponse(
                **_record_payload(row.record),
                userId=row.record.user_id,
                username=row.username,
                email=row.email,
            )
            for row in rows
        ],
        total=total,
        page=page,
        pageSize=size,
    )

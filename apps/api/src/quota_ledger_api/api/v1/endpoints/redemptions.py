"""API endpoints for redeeming codes and administering them."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.api.dependencies.session import require_admin_session, require_member_session
from quota_ledger_api.api.errors import ledger_http_error
from quota_ledger_api.db.session import get_session
from quota_ledger_api.models.redemption import RedemptionCode, RedemptionCodeType
from quota_ledger_api.models.user import User
from quota_ledger_api.services.clock import ClockSource
from quota_ledger_api.services.errors import LedgerError
from quota_ledger_api.services.redemption import RedemptionCodeStore, RedemptionService, is_expired


router = APIRouter(prefix="/redemptions", tags=["redemptions"])


class RedemptionKeyRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=64, description="Redemption code key")


class RedeemRequest(RedemptionKeyRequest):
    requestId: Optional[str] = Field(
        None,
        max_length=64,
        description="Client generated id; retries with the same id return the first result",
    )


class RedeemResponse(BaseModel):
    codeId: UUID
    creditedQuota: int
    remainingUses: int
    remainingUserUses: int
    codeType: str
    status: str
    replayed: bool


class RedemptionCodePublicResponse(BaseModel):
    id: UUID
    name: str
    type: str
    status: str
    quota: int
    maxUses: int
    maxUsesPerUser: int
    usedCount: int
    expiredTime: int
    expired: bool


class RedemptionValidateResponse(BaseModel):
    code: RedemptionCodePublicResponse
    redeemable: bool
    remainingUses: int
    remainingUserUses: int
    error: Optional[str] = None
    message: Optional[str] = None


class RedemptionCodeAdminResponse(RedemptionCodePublicResponse):
    key: str
    usedUserCount: int
    createdAt: datetime
    redeemedAt: Optional[datetime]
    createdByUserId: Optional[UUID]


class RedemptionCodeListResponse(BaseModel):
    items: List[RedemptionCodeAdminResponse]
    total: int
    page: int
    pageSize: int


class RedemptionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    count: int = Field(1, ge=1)
    quota: int = Field(..., gt=0)
    type: Literal["normal", "gift"] = "normal"
    maxUses: int = Field(1, ge=1)
    maxUsesPerUser: int = Field(1, ge=1)
    expiredTime: int = Field(0, ge=0, description="Unix seconds; 0 never expires")


class RedemptionUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    quota: Optional[int] = Field(None, gt=0)
    maxUses: Optional[int] = Field(None, ge=1)
    maxUsesPerUser: Optional[int] = Field(None, ge=1)
    expiredTime: Optional[int] = Field(None, ge=0, description="Unix seconds; 0 never expires")


class RedemptionCreateResponse(BaseModel):
    keys: List[str]
    items: List[RedemptionCodeAdminResponse]


class RedemptionGroupResponse(BaseModel):
    name: str
    total: int
    unused: int
    used: int
    disabled: int
    quotaTotal: int
    usedCount: int
    maxUses: int
    latestCreatedAt: Optional[datetime]


class RedemptionGroupListResponse(BaseModel):
    groups: List[RedemptionGroupResponse]
    total: int
    page: int
    pageSize: int


class RedemptionCleanupResponse(BaseModel):
    deleted: int


def _public_payload(code: RedemptionCode, now_ts: int) -> dict[str, object]:
    return {
        "id": code.id,
        "name": code.name,
        "type": code.code_type.value,
        "status": code.status.value,
        "quota": code.quota,
        "maxUses": code.max_uses,
        "maxUsesPerUser": code.max_uses_per_user,
        "usedCount": code.used_count,
        "expiredTime": code.expired_time,
        "expired": is_expired(code, now_ts),
    }


def _admin_payload(code: RedemptionCode, now_ts: int) -> RedemptionCodeAdminResponse:
    return RedemptionCodeAdminResponse(
        **_public_payload(code, now_ts),
        key=code.key,
        usedUserCount=code.used_user_count,
        createdAt=code.created_at,
        redeemedAt=code.redeemed_at,
        createdByUserId=code.created_by_user_id,
    )


@router.post("/validate", response_model=RedemptionValidateResponse)
async def validate_code(
    payload: RedemptionKeyRequest,
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionValidateResponse:
    clock = ClockSource()
    try:
        check = await RedemptionService(db, clock=clock).validate(user.id, payload.key)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return RedemptionValidateResponse(
        code=RedemptionCodePublicResponse(**_public_payload(check.code, clock.timestamp())),
        redeemable=check.redeemable,
        remainingUses=check.remaining_uses,
        remainingUserUses=check.remaining_user_uses,
        error=check.error.kind if check.error else None,
        message=str(check.error) if check.error else None,
    )


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_code(
    payload: RedeemRequest,
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedeemResponse:
    try:
        result = await RedemptionService(db).redeem(user.id, payload.key, request_id=payload.requestId)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return RedeemResponse(
        codeId=result.code_id,
        creditedQuota=result.credited_quota,
        remainingUses=result.remaining_uses,
        remainingUserUses=result.remaining_user_uses,
        codeType=result.code_type.value,
        status=result.status.value,
        replayed=result.replayed,
    )


@router.post("", response_model=RedemptionCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_codes(
    payload: RedemptionCreateRequest,
    admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCreateResponse:
    clock = ClockSource()
    try:
        codes = await RedemptionCodeStore(db, clock=clock).create_codes(
            name=payload.name,
            count=payload.count,
            quota=payload.quota,
            code_type=RedemptionCodeType(payload.type),
            max_uses=payload.maxUses,
            max_uses_per_user=payload.maxUsesPerUser,
            expired_time=payload.expiredTime,
            created_by=admin.id,
        )
    except LedgerError as error:
        raise ledger_http_error(error) from error
    now_ts = clock.timestamp()
    return RedemptionCreateResponse(
        keys=[code.key for code in codes],
        items=[_admin_payload(code, now_ts) for code in codes],
    )


@router.get("", response_model=RedemptionCodeListResponse)
async def list_codes(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, alias="pageSize", ge=1, le=100),
    keyword: Optional[str] = Query(None, max_length=64),
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCodeListResponse:
    clock = ClockSource()
    store = RedemptionCodeStore(db, clock=clock)
    if keyword:
        codes, total = await store.search_codes(keyword, page=page, page_size=page_size)
    else:
        codes, total = await store.list_codes(page=page, page_size=page_size)
    now_ts = clock.timestamp()
    return RedemptionCodeListResponse(
        items=[_admin_payload(code, now_ts) for code in codes],
        total=total,
        page=page,
        pageSize=page_size,
    )


@router.get("/grouped", response_model=RedemptionGroupListResponse)
async def list_grouped_codes(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, alias="pageSize", ge=1, le=100),
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionGroupListResponse:
    groups, total = await RedemptionCodeStore(db).list_grouped_by_name(page=page, page_size=page_size)
    return RedemptionGroupListResponse(
        groups=[
            RedemptionGroupResponse(
                name=group.name,
                total=group.total,
                unused=group.unused,
                used=group.used,
                disabled=group.disabled,
                quotaTotal=group.quota_total,
                usedCount=group.used_count,
                maxUses=group.max_uses,
                latestCreatedAt=group.latest_created_at,
            )
            for group in groups
        ],
        total=total,
        page=page,
        pageSize=page_size,
    )


@router.delete("/invalid", response_model=RedemptionCleanupResponse)
async def delete_invalid_codes(
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCleanupResponse:
    """Remove used, disabled and expired codes."""

    deleted = await RedemptionCodeStore(db).delete_invalid_codes()
    return RedemptionCleanupResponse(deleted=deleted)


@router.get("/{code_id}", response_model=RedemptionCodeAdminResponse)
async def get_code(
    code_id: UUID,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCodeAdminResponse:
    clock = ClockSource()
    try:
        code = await RedemptionCodeStore(db, clock=clock).get_code(code_id)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return _admin_payload(code, clock.timestamp())


@router.post("/{code_id}/disable", response_model=RedemptionCodeAdminResponse)
async def disable_code(
    code_id: UUID,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCodeAdminResponse:
    clock = ClockSource()
    try:
        code = await RedemptionCodeStore(db, clock=clock).disable_code(code_id)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return _admin_payload(code, clock.timestamp())


@router.post("/{code_id}/enable", response_model=RedemptionCodeAdminResponse)
async def enable_code(
    code_id: UUID,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCodeAdminResponse:
    clock = ClockSource()
    try:
        code = await RedemptionCodeStore(db, clock=clock).enable_code(code_id)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return _admin_payload(code, clock.timestamp())


@router.put("/{code_id}", response_model=RedemptionCodeAdminResponse)
async def update_code(
    code_id: UUID,
    payload: RedemptionUpdateRequest,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCodeAdminResponse:
    """Edit name, quota, expiry and use limits; NORMAL codes stay single use."""

    clock = ClockSource()
    try:
        code = await RedemptionCodeStore(db, clock=clock).update_code(
            code_id,
            name=payload.name,
            quota=payload.quota,
            expired_time=payload.expiredTime,
            max_uses=payload.maxUses,
            max_uses_per_user=payload.maxUsesPerUser,
        )
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return _admin_payload(code, clock.timestamp())


@router.delete("/grouped/{name}", response_model=RedemptionCleanupResponse)
async def delete_code_group(
    name: str,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionCleanupResponse:
    try:
        deleted = await RedemptionCodeStore(db).delete_codes_by_name(name)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return RedemptionCleanupResponse(deleted=deleted)


@router.delete("/{code_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_code(
    code_id: UUID,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> Response:
    try:
        await RedemptionCodeStore(db).delete_code(code_id)
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return Response(status_code=status.HTTP_204_NO_CONTENT)

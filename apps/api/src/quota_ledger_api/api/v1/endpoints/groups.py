"""API endpoints for the group catalog and group visibility."""

from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.api.dependencies.session import require_admin_session, require_member_session
from quota_ledger_api.api.errors import ledger_http_error
from quota_ledger_api.db.session import get_session
from quota_ledger_api.models.user import User
from quota_ledger_api.services.errors import LedgerError
from quota_ledger_api.services.settings import GroupVisibilityService


router = APIRouter(prefix="/groups", tags=["groups"])


class GroupResponse(BaseModel):
    name: str
    description: str


class GroupCatalogResponse(BaseModel):
    groups: List[GroupResponse]
    version: int


class GroupCatalogUpdateRequest(BaseModel):
    groups: Dict[str, str] = Field(..., description="Group name to description")
    expectedVersion: Optional[int] = None


class UsableGroupsResponse(BaseModel):
    group: str
    groups: List[GroupResponse]


class GroupVisibilityResponse(BaseModel):
    visibility: Dict[str, List[str]]
    version: int


class GroupVisibilityUpdateRequest(BaseModel):
    visibility: Dict[str, List[str]] = Field(..., description="Group name to the groups its members may select")
    expectedVersion: Optional[int] = None


@router.get("", response_model=GroupCatalogResponse)
async def list_groups(
    _user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> GroupCatalogResponse:
    catalog, version = await GroupVisibilityService(db).get_catalog()
    return GroupCatalogResponse(
        groups=[GroupResponse(name=name, description=catalog.describe(name)) for name in catalog.names()],
        version=version,
    )


@router.put("", response_model=GroupCatalogResponse)
async def update_groups(
    payload: GroupCatalogUpdateRequest,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> GroupCatalogResponse:
    try:
        catalog, version = await GroupVisibilityService(db).update_catalog(
            payload.groups,
            expected_version=payload.expectedVersion,
        )
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return GroupCatalogResponse(
        groups=[GroupResponse(name=name, description=catalog.describe(name)) for name in catalog.names()],
        version=version,
    )


@router.get("/self", response_model=UsableGroupsResponse)
async def list_usable_groups(
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> UsableGroupsResponse:
    """Groups the caller may select, including their own and the always-usable defaults."""

    usable = await GroupVisibilityService(db).usable_groups(user)
    return UsableGroupsResponse(
        group=user.group,
        groups=[GroupResponse(name=name, description=description) for name, description in usable.items()],
    )


@router.get("/visibility", response_model=GroupVisibilityResponse)
async def get_group_visibility(
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> GroupVisibilityResponse:
    mapping, version = await GroupVisibilityService(db).get_visibility()
    return GroupVisibilityResponse(visibility=mapping.as_payload(), version=version)


@router.put("/visibility", response_model=GroupVisibilityResponse)
async def update_group_visibility(
    payload: GroupVisibilityUpdateRequest,
    _admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> GroupVisibilityResponse:
    try:
        mapping, version = await GroupVisibilityService(db).update_visibility(
            payload.visibility,
            expected_version=payload.expectedVersion,
        )
    except LedgerError as error:
        raise ledger_http_error(error) from error
    return GroupVisibilityResponse(visibility=mapping.as_payload(), version=version)

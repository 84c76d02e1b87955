"""API endpoints for point balances, levels, and the ledger history."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.api.dependencies.session import require_admin_session, require_member_session
from iptv_manager_api.db.session import get_session
from iptv_manager_api.models.loyalty import LedgerEntry, LedgerEntryType, PointsAccount
from iptv_manager_api.models.user import User
from iptv_manager_api.services.loyalty import (
    PointsLedger,
    commit_or_raise,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
    run_with_storage_retry,
)
from iptv_manager_api.services.loyalty.levels import LevelProgress, configured_levels, progress_for


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class LevelResponse(BaseModel):
    levelNumber: int
    name: str
    minPoints: int
    maxPoints: Optional[int]
    benefits: List[str]


class NextLevelResponse(BaseModel):
    levelNumber: int
    name: str
    pointsNeeded: int


class LevelProgressResponse(BaseModel):
    points: int
    level: LevelResponse
    nextLevel: Optional[NextLevelResponse]
    progressPercent: float


class PointsSummaryResponse(BaseModel):
    userId: UUID
    currentPoints: int
    lifetimeEarned: int
    pointsThisMonth: int
    referralCode: Optional[str]
    level: LevelProgressResponse
    rankingLevel: LevelProgressResponse


class LedgerEntryResponse(BaseModel):
    id: UUID
    type: str
    points: int
    reason: str
    referenceId: Optional[UUID]
    note: Optional[str]
    createdAt: datetime


class LedgerWindowResponse(BaseModel):
    entries: List[LedgerEntryResponse]
    nextCursor: Optional[str]


class PointsAdjustmentRequest(BaseModel):
    points: int = Field(..., description="Signed amount; negative values debit the balance")
    note: str = Field(..., min_length=1, description="Reason recorded on the ledger entry")
    referenceId: Optional[UUID] = Field(
        None, description="Idempotency key; repeated adjustments with the same key are rejected"
    )


@router.get("/levels", response_model=List[LevelResponse])
async def list_levels() -> List[LevelResponse]:
    return [
        LevelResponse(
            levelNumber=level.level_number,
            name=level.name,
            minPoints=level.min_points,
            maxPoints=level.max_points,
            benefits=list(level.benefits),
        )
        for level in configured_levels()
    ]


@router.get("/points/me", response_model=PointsSummaryResponse)
async def get_my_points(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> PointsSummaryResponse:
    ledger = PointsLedger(db)
    account = await ledger.ensure_account(current_user.id)
    points_this_month = await ledger.points_this_month(current_user.id)
    await db.commit()
    return _serialize_summary(account, points_this_month)


@router.get("/points/me/history", response_model=LedgerWindowResponse)
async def get_my_history(
    types: Optional[List[str]] = Query(None, alias="type"),
    limit: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    return await _ledger_window(db, current_user.id, types=types, limit=limit, cursor=cursor)


@router.get("/admin/points/{user_id}", response_model=PointsSummaryResponse)
async def get_member_points(
    user_id: UUID,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> PointsSummaryResponse:
    if await db.get(User, user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    ledger = PointsLedger(db)
    account = await ledger.ensure_account(user_id)
    points_this_month = await ledger.points_this_month(user_id)
    await db.commit()
    return _serialize_summary(account, points_this_month)


@router.get("/admin/points/{user_id}/history", response_model=LedgerWindowResponse)
async def get_member_history(
    user_id: UUID,
    types: Optional[List[str]] = Query(None, alias="type"),
    limit: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> LedgerWindowResponse:
    return await _ledger_window(db, user_id, types=types, limit=limit, cursor=cursor)


@router.post(
    "/admin/points/{user_id}/adjustments",
    response_model=LedgerEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_member_points(
    user_id: UUID,
    payload: PointsAdjustmentRequest,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryResponse:
    if await db.get(User, user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    async def _adjust() -> LedgerEntry:
        entry = await PointsLedger(db).adjust(
            user_id,
            payload.points,
            note=payload.note,
            reference_id=payload.referenceId,
        )
        await commit_or_raise(db, operation="points:adjust")
        return entry

    if payload.referenceId is not None:
        entry = await run_with_storage_retry(db, _adjust, name="points:adjust")
    else:
        entry = await _adjust()
    await db.refresh(entry)
    return _serialize_ledger_entry(entry)


async def _ledger_window(
    db: AsyncSession,
    user_id: UUID,
    *,
    types: Optional[List[str]],
    limit: int,
    cursor: Optional[str],
) -> LedgerWindowResponse:
    entry_types: list[LedgerEntryType] = []
    for value in types or []:
        try:
            entry_types.append(LedgerEntryType(value))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported ledger type: {value}") from exc
    decoded = decode_time_uuid_cursor(cursor) if cursor else None

    entries, next_cursor = await PointsLedger(db).history(
        user_id,
        limit=limit,
        cursor=decoded,
        entry_types=entry_types or None,
    )
    return LedgerWindowResponse(
        entries=[_serialize_ledger_entry(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


def _serialize_level(progress: LevelProgress) -> LevelProgressResponse:
    next_level = progress.next_level
    return LevelProgressResponse(
        points=progress.points,
        level=LevelResponse(
            levelNumber=progress.level.level_number,
            name=progress.level.name,
            minPoints=progress.level.min_points,
            maxPoints=progress.level.max_points,
            benefits=list(progress.level.benefits),
        ),
        nextLevel=(
            NextLevelResponse(
                levelNumber=next_level.level_number,
                name=next_level.name,
                pointsNeeded=next_level.points_needed,
            )
            if next_level
            else None
        ),
        progressPercent=progress.progress_percent,
    )


def _serialize_summary(account: PointsAccount, points_this_month: int) -> PointsSummaryResponse:
    return PointsSummaryResponse(
        userId=account.user_id,
        currentPoints=account.current_points,
        lifetimeEarned=account.lifetime_earned,
        pointsThisMonth=points_this_month,
        referralCode=account.referral_code,
        level=_serialize_level(progress_for(account.current_points)),
        rankingLevel=_serialize_level(progress_for(account.lifetime_earned)),
    )


def _serialize_ledger_entry(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        type=entry.entry_type.value,
        points=entry.points,
        reason=entry.reason.value,
        referenceId=entry.reference_id,
        note=entry.note,
        createdAt=entry.created_at,
    )

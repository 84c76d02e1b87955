"""API endpoints for the reward catalog and redemptions."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.api.dependencies.session import require_admin_session, require_member_session
from iptv_manager_api.db.session import get_session
from iptv_manager_api.models.loyalty import Redemption, RedemptionStatus, Reward, RewardCategory
from iptv_manager_api.models.user import User
from iptv_manager_api.services.loyalty import (
    AdminApprovalGateway,
    ApprovalAction,
    ApprovalRequest,
    ApprovalTarget,
    RedemptionService,
    RewardCatalog,
    commit_or_raise,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
    run_with_storage_retry,
)


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class RewardResponse(BaseModel):
    id: UUID
    title: str
    description: Optional[str]
    pointsCost: int
    category: str
    value: Optional[str]
    stock: Optional[int]
    active: bool
    expiresAt: Optional[datetime]
    terms: List[str]
    totalRedeemed: int
    availability: str
    remaining: Optional[int]
    unavailableReason: Optional[str]


class RewardCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    pointsCost: int = Field(..., gt=0, description="Price in points; frozen on each redemption")
    category: RewardCategory
    value: Optional[str] = Field(None, description="Display value, e.g. 10% OFF")
    stock: Optional[int] = Field(None, ge=0, description="Units left; omit for unlimited")
    expiresAt: Optional[datetime] = None
    terms: List[str] = Field(default_factory=list)
    active: bool = True


class RewardUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    pointsCost: Optional[int] = Field(None, gt=0)
    category: Optional[RewardCategory] = None
    value: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    expiresAt: Optional[datetime] = None
    terms: Optional[List[str]] = None
    active: Optional[bool] = None


class RedemptionResponse(BaseModel):
    id: UUID
    userId: UUID
    rewardId: Optional[UUID]
    rewardTitle: str
    pointsSpent: int
    status: str
    code: str
    redeemedAt: datetime
    approvedAt: Optional[datetime]
    usedAt: Optional[datetime]
    cancelledAt: Optional[datetime]
    expiresAt: Optional[datetime]


class RedemptionWindowResponse(BaseModel):
    redemptions: List[RedemptionResponse]
    nextCursor: Optional[str]


class RedemptionDecisionRequest(BaseModel):
    note: Optional[str] = Field(None, description="Reason recorded in the approval log")


_REWARD_FIELD_MAP = {
    "title": "title",
    "description": "description",
    "pointsCost": "points_cost",
    "category": "category",
    "value": "value",
    "stock": "stock",
    "expiresAt": "expires_at",
    "terms": "terms",
    "active": "active",
}


@router.get("/rewards", response_model=List[RewardResponse])
async def list_rewards(
    category: Optional[RewardCategory] = Query(None),
    _: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    catalog = RewardCatalog(db)
    rewards = await catalog.list_rewards(category=category)
    return [_serialize_reward(catalog, reward) for reward in rewards]


@router.post(
    "/rewards/{reward_id}/redeem",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_reward(
    reward_id: UUID,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=64),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    user_id = current_user.id

    async def _redeem() -> Redemption:
        redemption = await RedemptionService(db).redeem(user_id, reward_id, request_id=idempotency_key)
        await commit_or_raise(db, operation="redemption:create")
        return redemption

    if idempotency_key:
        redemption = await run_with_storage_retry(db, _redeem, name="redemption:create")
    else:
        redemption = await _redeem()
    await db.refresh(redemption)
    return _serialize_redemption(redemption)


@router.get("/redemptions/me", response_model=RedemptionWindowResponse)
async def list_my_redemptions(
    statuses: Optional[List[str]] = Query(None, alias="status"),
    limit: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionWindowResponse:
    redemptions, next_cursor = await RedemptionService(db).list_for_user(
        current_user.id,
        limit=limit,
        cursor=decode_time_uuid_cursor(cursor) if cursor else None,
        statuses=_parse_statuses(statuses),
    )
    return _redemption_window(redemptions, next_cursor)


@router.get("/admin/rewards", response_model=List[RewardResponse])
async def list_all_rewards(
    category: Optional[RewardCategory] = Query(None),
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    catalog = RewardCatalog(db)
    rewards = await catalog.list_rewards(category=category, include_inactive=True)
    return [_serialize_reward(catalog, reward) for reward in rewards]


@router.post("/admin/rewards", response_model=RewardResponse, status_code=status.HTTP_201_CREATED)
async def create_reward(
    payload: RewardCreateRequest,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    catalog = RewardCatalog(db)
    reward = await catalog.create(
        title=payload.title,
        description=payload.description,
        points_cost=payload.pointsCost,
        category=payload.category,
        value=payload.value,
        stock=payload.stock,
        expires_at=payload.expiresAt,
        terms=payload.terms,
        active=payload.active,
    )
    await db.commit()
    await db.refresh(reward)
    return _serialize_reward(catalog, reward)


@router.patch("/admin/rewards/{reward_id}", response_model=RewardResponse)
async def update_reward(
    reward_id: UUID,
    payload: RewardUpdateRequest,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    changes = {
        _REWARD_FIELD_MAP[key]: value for key, value in payload.model_dump(exclude_unset=True).items()
    }
    catalog = RewardCatalog(db)
    reward = await catalog.update(reward_id, **changes)
    await db.commit()
    await db.refresh(reward)
    return _serialize_reward(catalog, reward)


@router.post("/admin/rewards/{reward_id}/activate", response_model=RewardResponse)
async def activate_reward(
    reward_id: UUID,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    catalog = RewardCatalog(db)
    reward = await catalog.activate(reward_id)
    await db.commit()
    await db.refresh(reward)
    return _serialize_reward(catalog, reward)


@router.post("/admin/rewards/{reward_id}/deactivate", response_model=RewardResponse)
async def deactivate_reward(
    reward_id: UUID,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    catalog = RewardCatalog(db)
    reward = await catalog.deactivate(reward_id)
    await db.commit()
    await db.refresh(reward)
    return _serialize_reward(catalog, reward)


@router.delete("/admin/rewards/{reward_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reward(
    reward_id: UUID,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> Response:
    await RewardCatalog(db).delete(reward_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/admin/redemptions", response_model=RedemptionWindowResponse)
async def list_redemptions(
    statuses: Optional[List[str]] = Query(None, alias="status"),
    reward_id: Optional[UUID] = Query(None, alias="rewardId"),
    limit: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionWindowResponse:
    redemptions, next_cursor = await RedemptionService(db).list_redemptions(
        limit=limit,
        cursor=decode_time_uuid_cursor(cursor) if cursor else None,
        statuses=_parse_statuses(statuses),
        reward_id=reward_id,
    )
    return _redemption_window(redemptions, next_cursor)


@router.post("/admin/redemptions/{redemption_id}/approve", response_model=RedemptionResponse)
async def approve_redemption(
    redemption_id: UUID,
    payload: RedemptionDecisionRequest | None = None,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    return await _decide(db, current_user, redemption_id, ApprovalAction.APPROVE, payload)


@router.post("/admin/redemptions/{redemption_id}/reject", response_model=RedemptionResponse)
async def reject_redemption(
    redemption_id: UUID,
    payload: RedemptionDecisionRequest | None = None,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    return await _decide(db, current_user, redemption_id, ApprovalAction.REJECT, payload)


@router.post("/admin/redemptions/{redemption_id}/use", response_model=RedemptionResponse)
async def use_redemption(
    redemption_id: UUID,
    payload: RedemptionDecisionRequest | None = None,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    return await _decide(db, current_user, redemption_id, ApprovalAction.USE, payload)


async def _decide(
    db: AsyncSession,
    actor: User,
    redemption_id: UUID,
    action: ApprovalAction,
    payload: RedemptionDecisionRequest | None,
) -> RedemptionResponse:
    redemption = await AdminApprovalGateway(db).submit(
        ApprovalRequest(
            target=ApprovalTarget.REDEMPTION,
            action=action,
            target_id=redemption_id,
            actor=actor,
            note=payload.note if payload else None,
        )
    )
    await commit_or_raise(db, operation=f"redemption:{action.value}")
    await db.refresh(redemption)
    return _serialize_redemption(redemption)


def _parse_statuses(values: Optional[List[str]]) -> list[RedemptionStatus] | None:
    statuses: list[RedemptionStatus] = []
    for value in values or []:
        try:
            statuses.append(RedemptionStatus(value))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported redemption status: {value}") from exc
    return statuses or None


def _redemption_window(redemptions: list[Redemption], next_cursor) -> RedemptionWindowResponse:
    return RedemptionWindowResponse(
        redemptions=[_serialize_redemption(redemption) for redemption in redemptions],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


def _serialize_reward(catalog: RewardCatalog, reward: Reward) -> RewardResponse:
    availability = catalog.availability(reward)
    return RewardResponse(
        id=reward.id,
        title=reward.title,
        description=reward.description,
        pointsCost=reward.points_cost,
        category=reward.category.value,
        value=reward.value,
        stock=reward.stock,
        active=reward.active,
        expiresAt=reward.expires_at,
        terms=list(reward.terms or []),
        totalRedeemed=reward.total_redeemed,
        availability=availability.status,
        remaining=availability.remaining,
        unavailableReason=availability.reason,
    )


def _serialize_redemption(redemption: Redemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        userId=redemption.user_id,
        rewardId=redemption.reward_id,
        rewardTitle=redemption.reward_title,
        pointsSpent=redemption.points_spent,
        status=redemption.status.value,
        code=redemption.code,
        redeemedAt=redemption.redeemed_at,
        approvedAt=redemption.approved_at,
        usedAt=redemption.used_at,
        cancelledAt=redemption.cancelled_at,
        expiresAt=redemption.expires_at,
    )

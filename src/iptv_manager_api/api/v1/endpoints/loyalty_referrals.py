"""API endpoints for the referral lifecycle and referral analytics."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.api.dependencies.security import require_internal_api_key
from iptv_manager_api.api.dependencies.session import require_admin_session, require_member_session
from iptv_manager_api.db.session import get_session
from iptv_manager_api.models.loyalty import Referral, ReferralStatus
from iptv_manager_api.models.user import User
from iptv_manager_api.services.loyalty import (
    AdminApprovalGateway,
    ApprovalAction,
    ApprovalRequest,
    ApprovalTarget,
    ReferralTracker,
    ReferrerRanking,
    commit_or_raise,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class ReferralCreateRequest(BaseModel):
    referredEmail: str = Field(..., description="E-mail of the invited customer")


class ReferralRegistrationRequest(BaseModel):
    referralCode: str = Field(..., description="Code the invitee signed up with")
    referredEmail: str
    referredUserId: Optional[UUID] = Field(None, description="Account created for the invitee")


class ReferralAttachRequest(BaseModel):
    referredUserId: UUID


class ReferralCompleteRequest(BaseModel):
    subscriptionPlan: Optional[str] = Field(None, description="Plan the invitee subscribed to")
    note: Optional[str] = None


class ReferralCancelRequest(BaseModel):
    note: Optional[str] = Field(None, description="Reason recorded in the approval log")


class ReferralResponse(BaseModel):
    id: UUID
    referrerUserId: UUID
    referredEmail: str
    referredUserId: Optional[UUID]
    status: str
    rewardPoints: int
    rewardGiven: bool
    subscriptionPlan: Optional[str]
    createdAt: datetime
    completedAt: Optional[datetime]
    cancelledAt: Optional[datetime]


class ReferralWindowResponse(BaseModel):
    referrals: List[ReferralResponse]
    nextCursor: Optional[str]


class ReferralMilestoneResponse(BaseModel):
    target: int
    reached: bool


class MyReferralsResponse(BaseModel):
    referralCode: str
    referralLink: str
    total: int
    pending: int
    completed: int
    cancelled: int
    pointsEarned: int
    milestones: List[ReferralMilestoneResponse]
    referrals: List[ReferralResponse]
    nextCursor: Optional[str]


class ReferrerRankingResponse(BaseModel):
    userId: Optional[UUID]
    name: str
    email: Optional[str]
    totalReferrals: int
    completedReferrals: int
    totalPoints: int
    conversionRate: float
    lastReferralAt: Optional[datetime]


class ReferralStatsResponse(BaseModel):
    total: int
    pending: int
    completed: int
    cancelled: int
    conversionRate: float
    totalPointsAwarded: int
    topReferrer: ReferrerRankingResponse
    referralsThisMonth: int
    referralsLastMonth: int
    monthlyGrowth: float


@router.post("/referrals", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
async def create_referral(
    payload: ReferralCreateRequest,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    referral = await ReferralTracker(db).create(current_user.id, payload.referredEmail)
    await db.commit()
    await db.refresh(referral)
    return _serialize_referral(referral)


@router.get("/referrals/me", response_model=MyReferralsResponse)
async def get_my_referrals(
    limit: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> MyReferralsResponse:
    tracker = ReferralTracker(db)
    summary = await tracker.summary_for(current_user.id)
    referrals, next_cursor = await tracker.list_referrals(
        referrer_user_id=current_user.id,
        limit=limit,
        cursor=decode_time_uuid_cursor(cursor) if cursor else None,
    )
    await db.commit()
    return MyReferralsResponse(
        referralCode=summary.referral_code,
        referralLink=summary.referral_link,
        total=summary.total,
        pending=summary.pending,
        completed=summary.completed,
        cancelled=summary.cancelled,
        pointsEarned=summary.points_earned,
        milestones=[
            ReferralMilestoneResponse(target=item.target, reached=item.reached) for item in summary.milestones
        ],
        referrals=[_serialize_referral(referral) for referral in referrals],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.post(
    "/referrals/registrations",
    response_model=ReferralResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal_api_key)],
)
async def register_referred_signup(
    payload: ReferralRegistrationRequest,
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    """Called by the registration flow when a visitor signs up through a referral link."""

    referral = await ReferralTracker(db).create_from_code(
        payload.referralCode,
        payload.referredEmail,
        payload.referredUserId,
    )
    await db.commit()
    await db.refresh(referral)
    return _serialize_referral(referral)


@router.get("/admin/referrals", response_model=ReferralWindowResponse)
async def list_referrals(
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = Query(None),
    created_from: Optional[datetime] = Query(None, alias="createdFrom"),
    created_to: Optional[datetime] = Query(None, alias="createdTo"),
    limit: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> ReferralWindowResponse:
    referral_status: ReferralStatus | None = None
    if status_filter:
        try:
            referral_status = ReferralStatus(status_filter)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported referral status: {status_filter}") from exc

    referrals, next_cursor = await ReferralTracker(db).list_referrals(
        status=referral_status,
        search=search,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        cursor=decode_time_uuid_cursor(cursor) if cursor else None,
    )
    return ReferralWindowResponse(
        referrals=[_serialize_referral(referral) for referral in referrals],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/admin/referrals/stats", response_model=ReferralStatsResponse)
async def get_referral_stats(
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> ReferralStatsResponse:
    stats = await ReferralTracker(db).stats()
    return ReferralStatsResponse(
        total=stats.total,
        pending=stats.pending,
        completed=stats.completed,
        cancelled=stats.cancelled,
        conversionRate=stats.conversion_rate,
        totalPointsAwarded=stats.total_points_awarded,
        topReferrer=_serialize_ranking(stats.top_referrer),
        referralsThisMonth=stats.referrals_this_month,
        referralsLastMonth=stats.referrals_last_month,
        monthlyGrowth=stats.monthly_growth,
    )


@router.get("/admin/referrals/top-referrers", response_model=List[ReferrerRankingResponse])
async def get_top_referrers(
    limit: int = Query(10, ge=1, le=100),
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> List[ReferrerRankingResponse]:
    rankings = await ReferralTracker(db).top_referrers(limit=limit)
    return [_serialize_ranking(ranking) for ranking in rankings]


@router.post("/admin/referrals/{referral_id}/registration", response_model=ReferralResponse)
async def attach_referral_registration(
    referral_id: UUID,
    payload: ReferralAttachRequest,
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    referral = await ReferralTracker(db).attach_registration(referral_id, payload.referredUserId)
    await db.commit()
    await db.refresh(referral)
    return _serialize_referral(referral)


@router.post("/admin/referrals/{referral_id}/complete", response_model=ReferralResponse)
async def complete_referral(
    referral_id: UUID,
    payload: ReferralCompleteRequest | None = None,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    referral = await AdminApprovalGateway(db).submit(
        ApprovalRequest(
            target=ApprovalTarget.REFERRAL,
            action=ApprovalAction.COMPLETE,
            target_id=referral_id,
            actor=current_user,
            subscription_plan=payload.subscriptionPlan if payload else None,
            note=payload.note if payload else None,
        )
    )
    await commit_or_raise(db, operation="referral:complete")
    await db.refresh(referral)
    return _serialize_referral(referral)


@router.post("/admin/referrals/{referral_id}/cancel", response_model=ReferralResponse)
async def cancel_referral(
    referral_id: UUID,
    payload: ReferralCancelRequest | None = None,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    referral = await AdminApprovalGateway(db).submit(
        ApprovalRequest(
            target=ApprovalTarget.REFERRAL,
            action=ApprovalAction.CANCEL,
            target_id=referral_id,
            actor=current_user,
            note=payload.note if payload else None,
        )
    )
    await db.commit()
    await db.refresh(referral)
    return _serialize_referral(referral)


def _serialize_referral(referral: Referral) -> ReferralResponse:
    return ReferralResponse(
        id=referral.id,
        referrerUserId=referral.referrer_user_id,
        referredEmail=referral.referred_email,
        referredUserId=referral.referred_user_id,
        status=referral.status.value,
        rewardPoints=referral.reward_points,
        rewardGiven=referral.reward_given,
        subscriptionPlan=referral.subscription_plan,
        createdAt=referral.created_at,
        completedAt=referral.completed_at,
        cancelledAt=referral.cancelled_at,
    )


def _serialize_ranking(ranking: ReferrerRanking) -> ReferrerRankingResponse:
    return ReferrerRankingResponse(
        userId=ranking.user_id,
        name=ranking.name,
        email=ranking.email,
        totalReferrals=ranking.total_referrals,
        completedReferrals=ranking.completed_referrals,
        totalPoints=ranking.total_points,
        conversionRate=ranking.conversion_rate,
        lastReferralAt=ranking.last_referral_at,
    )

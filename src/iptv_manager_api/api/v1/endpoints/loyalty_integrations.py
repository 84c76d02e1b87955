"""Inbound events from the subscription billing service."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.api.dependencies.security import require_internal_api_key
from iptv_manager_api.db.session import get_session
from iptv_manager_api.services.loyalty import (
    SubscriptionActivation,
    SubscriptionActivationHandler,
    commit_or_raise,
    run_with_storage_retry,
)
from iptv_manager_api.services.loyalty.subscriptions import ActivationOutcome


router = APIRouter(
    prefix="/loyalty/integrations",
    tags=["loyalty"],
    dependencies=[Depends(require_internal_api_key)],
)


class SubscriptionActivationRequest(BaseModel):
    subscriptionId: UUID = Field(..., description="Billing subscription identifier, used as the idempotency key")
    userId: UUID
    plan: str = Field(..., min_length=1)


class SubscriptionActivationResponse(BaseModel):
    subscriptionId: UUID
    completedReferralId: Optional[UUID]
    renewalPoints: int
    duplicate: bool


@router.post("/subscription-activations", response_model=SubscriptionActivationResponse)
async def record_subscription_activation(
    payload: SubscriptionActivationRequest,
    db: AsyncSession = Depends(get_session),
) -> SubscriptionActivationResponse:
    activation = SubscriptionActivation(
        subscription_id=payload.subscriptionId,
        user_id=payload.userId,
        plan=payload.plan,
    )

    async def _handle() -> ActivationOutcome:
        outcome = await SubscriptionActivationHandler(db).handle(activation)
        await commit_or_raise(db, operation="subscription:activation")
        return outcome

    outcome = await run_with_storage_retry(db, _handle, name="subscription:activation")
    return SubscriptionActivationResponse(
        subscriptionId=payload.subscriptionId,
        completedReferralId=outcome.completed_referral_id,
        renewalPoints=outcome.renewal_points,
        duplicate=outcome.duplicate,
    )

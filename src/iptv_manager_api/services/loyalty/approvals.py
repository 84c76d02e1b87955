"""Staff approval surface feeding state transitions into the loyalty services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.models.loyalty import Redemption, Referral
from iptv_manager_api.models.user import User, UserRoleEnum
from iptv_manager_api.observability.loyalty import get_loyalty_store
from iptv_manager_api.observability.tracing import loyalty_span

from .errors import ApprovalForbiddenError, LoyaltyValidationError
from .redemptions import RedemptionService
from .referrals import ReferralTracker


class ApprovalTarget(str, Enum):
    REFERRAL = "referral"
    REDEMPTION = "redemption"


class ApprovalAction(str, Enum):
    COMPLETE = "complete"
    CANCEL = "cancel"
    APPROVE = "approve"
    REJECT = "reject"
    USE = "use"


_ALLOWED_ACTIONS = {
    ApprovalTarget.REFERRAL: {ApprovalAction.COMPLETE, ApprovalAction.CANCEL},
    ApprovalTarget.REDEMPTION: {ApprovalAction.APPROVE, ApprovalAction.REJECT, ApprovalAction.USE},
}


@dataclass(frozen=True)
class ApprovalRequest:
    """A single staff decision on a referral or redemption."""

    target: ApprovalTarget
    action: ApprovalAction
    target_id: UUID
    actor: User
    subscription_plan: str | None = None
    note: str | None = None


class AdminApprovalGateway:
    """Validate staff decisions and dispatch them to the owning service."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        referrals: ReferralTracker | None = None,
        redemptions: RedemptionService | None = None,
    ) -> None:
        self._referrals = referrals or ReferralTracker(session)
        self._redemptions = redemptions or RedemptionService(session)
        self._observability = get_loyalty_store()

    async def submit(self, request: ApprovalRequest) -> Referral | Redemption:
        if request.actor.role != UserRoleEnum.ADMIN.value:
            raise ApprovalForbiddenError(
                "Only administrators can approve loyalty actions",
                actor_id=str(request.actor.id),
            )
        if request.action not in _ALLOWED_ACTIONS[request.target]:
            raise LoyaltyValidationError(
                f"Action {request.action.value} is not valid for a {request.target.value}",
            )

        with loyalty_span(
            f"loyalty.approval.{request.target.value}.{request.action.value}",
            target_id=str(request.target_id),
            actor_id=str(request.actor.id),
        ):
            result = await self._dispatch(request)

        self._observability.record_approval(request.target.value, request.action.value)
        logger.info(
            "Loyalty approval applied",
            target=request.target.value,
            action=request.action.value,
            target_id=str(request.target_id),
            actor_id=str(request.actor.id),
            note=request.note,
        )
        return result

    async def _dispatch(self, request: ApprovalRequest) -> Referral | Redemption:
        if request.target == ApprovalTarget.REFERRAL:
            if request.action == ApprovalAction.COMPLETE:
                return await self._referrals.complete(request.target_id, request.subscription_plan)
            return await self._referrals.cancel(request.target_id)
        if request.action == ApprovalAction.APPROVE:
            return await self._redemptions.approve(request.target_id)
        if request.action == ApprovalAction.REJECT:
            return await self._redemptions.reject(request.target_id)
        return await self._redemptions.mark_used(request.target_id)


__all__ = [
    "AdminApprovalGateway",
    "ApprovalAction",
    "ApprovalRequest",
    "ApprovalTarget",
]

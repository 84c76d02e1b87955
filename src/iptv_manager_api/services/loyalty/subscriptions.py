"""Reactions to subscription activations reported by the billing service."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import LedgerReason

from .errors import DuplicateCreditError, StorageError
from .ledger import PointsLedger
from .referrals import ReferralTracker


@dataclass(frozen=True)
class SubscriptionActivation:
    subscription_id: UUID
    user_id: UUID
    plan: str


@dataclass(frozen=True)
class ActivationOutcome:
    completed_referral_id: UUID | None = None
    renewal_points: int = 0
    duplicate: bool = False


class SubscriptionActivationHandler:
    """Auto-complete referrals and grant renewal points when plans activate.

    Both reactions are opt-in through settings; by default referrals wait for
    an administrator.
    """

    def __init__(self, session: AsyncSession, *, ledger: PointsLedger | None = None) -> None:
        self._db = session
        self._ledger = ledger or PointsLedger(session)
        self._referrals = ReferralTracker(session, ledger=self._ledger)

    async def handle(self, activation: SubscriptionActivation) -> ActivationOutcome:
        completed_referral_id: UUID | None = None
        if settings.referral_auto_complete_on_subscription:
            referral = await self._referrals.find_pending_for_referred_user(activation.user_id)
            if referral is not None:
                await self._referrals.complete(referral.id, activation.plan)
                completed_referral_id = referral.id

        renewal_points = 0
        duplicate = False
        if settings.subscription_renewal_points > 0:
            try:
                await self._ledger.credit(
                    activation.user_id,
                    settings.subscription_renewal_points,
                    LedgerReason.SUBSCRIPTION_RENEWAL,
                    activation.subscription_id,
                    note=f"Plan {activation.plan}",
                )
                renewal_points = settings.subscription_renewal_points
            except DuplicateCreditError as error:
                if not self._db.in_transaction():
                    # lost a race on the idempotency key; the rollback also undid the referral completion
                    raise StorageError(
                        "Subscription activation raced with a concurrent delivery",
                        subscription_id=str(activation.subscription_id),
                    ) from error
                duplicate = True
                logger.info(
                    "Subscription activation already credited",
                    subscription_id=str(activation.subscription_id),
                )

        logger.info(
            "Processed subscription activation",
            subscription_id=str(activation.subscription_id),
            user_id=str(activation.user_id),
            plan=activation.plan,
            completed_referral_id=str(completed_referral_id) if completed_referral_id else None,
            renewal_points=renewal_points,
        )
        return ActivationOutcome(
            completed_referral_id=completed_referral_id,
            renewal_points=renewal_points,
            duplicate=duplicate,
        )


__all__ = ["ActivationOutcome", "SubscriptionActivation", "SubscriptionActivationHandler"]

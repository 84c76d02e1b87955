from uuid import uuid4

import pytest

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import ReferralStatus
from iptv_manager_api.services.loyalty import (
    PointsLedger,
    ReferralTracker,
    SubscriptionActivation,
    SubscriptionActivationHandler,
)


async def _pending_referral(session, make_user):
    referrer = await make_user(session, "seller@example.com")
    invitee = await make_user(session, "viewer@example.com")
    tracker = ReferralTracker(session)
    referral = await tracker.create(referrer.id, "viewer@example.com", reward_points=500)
    await tracker.attach_registration(referral.id, invitee.id)
    return referrer, invitee, referral


@pytest.mark.asyncio
async def test_activation_leaves_referrals_for_admin_by_default(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer, invitee, referral = await _pending_referral(session, make_user)

        outcome = await SubscriptionActivationHandler(session).handle(
            SubscriptionActivation(subscription_id=uuid4(), user_id=invitee.id, plan="Mensal")
        )

        assert outcome.completed_referral_id is None
        assert outcome.renewal_points == 0
        assert referral.status == ReferralStatus.PENDING
        assert (await PointsLedger(session).balance(referrer.id)).current_points == 0


@pytest.mark.asyncio
async def test_activation_auto_completes_when_enabled(session_factory, make_user, monkeypatch) -> None:
    monkeypatch.setattr(settings, "referral_auto_complete_on_subscription", True)
    async with session_factory() as session:
        referrer, invitee, referral = await _pending_referral(session, make_user)

        outcome = await SubscriptionActivationHandler(session).handle(
            SubscriptionActivation(subscription_id=uuid4(), user_id=invitee.id, plan="Trimestral")
        )

        assert outcome.completed_referral_id == referral.id
        assert referral.status == ReferralStatus.COMPLETED
        assert referral.subscription_plan == "Trimestral"
        assert (await PointsLedger(session).balance(referrer.id)).current_points == 500

        # a later activation finds no pending referral
        again = await SubscriptionActivationHandler(session).handle(
            SubscriptionActivation(subscription_id=uuid4(), user_id=invitee.id, plan="Trimestral")
        )
        assert again.completed_referral_id is None
        assert (await PointsLedger(session).balance(referrer.id)).current_points == 500


@pytest.mark.asyncio
async def test_renewal_points_are_credited_once_per_subscription(session_factory, make_user, monkeypatch) -> None:
    monkeypatch.setattr(settings, "subscription_renewal_points", 50)
    async with session_factory() as session:
        subscriber = await make_user(session, "renewer@example.com")
        activation = SubscriptionActivation(subscription_id=uuid4(), user_id=subscriber.id, plan="Anual")
        handler = SubscriptionActivationHandler(session)

        first = await handler.handle(activation)
        replay = await handler.handle(activation)

        assert first.renewal_points == 50
        assert first.duplicate is False
        assert replay.renewal_points == 0
        assert replay.duplicate is True
        assert (await PointsLedger(session).balance(subscriber.id)).current_points == 50

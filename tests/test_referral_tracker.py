from uuid import uuid4

import pytest

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import LedgerReason, ReferralStatus
from iptv_manager_api.services.loyalty import (
    DuplicateCreditError,
    InvalidTransitionError,
    LoyaltyNotFoundError,
    PointsLedger,
    ReferralTracker,
    ReferralValidationError,
)
from iptv_manager_api.services.loyalty.referrals import NO_TOP_REFERRER
from iptv_manager_api.observability.loyalty import get_loyalty_store


@pytest.mark.asyncio
async def test_create_normalizes_email_and_uses_default_reward(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "referrer@example.com")
        tracker = ReferralTracker(session)

        referral = await tracker.create(referrer.id, "  Friend@Example.COM ")
        await session.commit()

        assert referral.referred_email == "friend@example.com"
        assert referral.status == ReferralStatus.PENDING
        assert referral.reward_points == settings.referral_reward_points
        assert referral.reward_given is False
        # creating a referral never moves points
        assert (await PointsLedger(session).balance(referrer.id)).current_points == 0


@pytest.mark.asyncio
async def test_create_rejects_invalid_referrals(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "self@example.com")
        tracker = ReferralTracker(session)

        with pytest.raises(ReferralValidationError):
            await tracker.create(referrer.id, "SELF@example.com")
        with pytest.raises(ReferralValidationError):
            await tracker.create(referrer.id, "not-an-email")
        with pytest.raises(ReferralValidationError):
            await tracker.create(referrer.id, "friend@example.com", reward_points=0)

        await tracker.create(referrer.id, "friend@example.com")
        with pytest.raises(ReferralValidationError) as excinfo:
            await tracker.create(referrer.id, "friend@example.com")
        assert excinfo.value.code == "invalid_referral"


@pytest.mark.asyncio
async def test_complete_credits_referrer_exactly_once(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "ana@example.com")
        tracker = ReferralTracker(session)
        referral = await tracker.create(referrer.id, "bia@example.com", reward_points=500)

        completed = await tracker.complete(referral.id, subscription_plan="Premium")
        await session.commit()

        assert completed.status == ReferralStatus.COMPLETED
        assert completed.reward_given is True
        assert completed.subscription_plan == "Premium"
        assert completed.completed_at is not None

        ledger = PointsLedger(session)
        balance = await ledger.balance(referrer.id)
        assert balance.current_points == 500
        assert balance.lifetime_earned == 500
        entry = await ledger.find_entry(LedgerReason.REFERRAL_COMPLETION, referral.id)
        assert entry is not None and entry.points == 500

        with pytest.raises(InvalidTransitionError) as excinfo:
            await tracker.complete(referral.id)
        assert excinfo.value.extra["current_status"] == "completed"
        assert (await ledger.balance(referrer.id)).current_points == 500


@pytest.mark.asyncio
async def test_cancelled_referral_cannot_complete(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "cancel@example.com")
        tracker = ReferralTracker(session)
        referral = await tracker.create(referrer.id, "gone@example.com")

        cancelled = await tracker.cancel(referral.id)
        assert cancelled.status == ReferralStatus.CANCELLED
        assert cancelled.cancelled_at is not None

        with pytest.raises(InvalidTransitionError):
            await tracker.complete(referral.id)
        with pytest.raises(InvalidTransitionError):
            await tracker.cancel(referral.id)
        assert (await PointsLedger(session).balance(referrer.id)).current_points == 0

        with pytest.raises(LoyaltyNotFoundError):
            await tracker.cancel(uuid4())


@pytest.mark.asyncio
async def test_complete_rolls_back_when_credit_is_rejected(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "clash@example.com")
        tracker = ReferralTracker(session)
        referral = await tracker.create(referrer.id, "clash-friend@example.com")
        # an entry with the same idempotency key already exists
        await PointsLedger(session).credit(referrer.id, 10, LedgerReason.REFERRAL_COMPLETION, referral.id)

        with pytest.raises(DuplicateCreditError):
            await tracker.complete(referral.id)

        assert referral.status == ReferralStatus.PENDING
        assert referral.completed_at is None
        assert get_loyalty_store().snapshot().referrals["completion_failed"] == 1


@pytest.mark.asyncio
async def test_create_from_code_links_registration(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "host@example.com")
        invitee = await make_user(session, "guest@example.com")
        account = await PointsLedger(session).ensure_account(referrer.id)
        tracker = ReferralTracker(session)

        referral = await tracker.create_from_code(account.referral_code.lower(), "guest@example.com", invitee.id)
        again = await tracker.create_from_code(account.referral_code, "GUEST@example.com", invitee.id)

        assert again.id == referral.id
        assert referral.referrer_user_id == referrer.id
        assert referral.referred_user_id == invitee.id
        assert (await tracker.find_pending_for_referred_user(invitee.id)).id == referral.id

        with pytest.raises(ReferralValidationError):
            await tracker.create_from_code("NOPE000000", "x@example.com")
        with pytest.raises(ReferralValidationError):
            await tracker.create_from_code(account.referral_code, "other@example.com", referrer.id)


@pytest.mark.asyncio
async def test_attach_registration_refuses_a_second_user(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "attach@example.com")
        first = await make_user(session, "first@example.com")
        second = await make_user(session, "second@example.com")
        tracker = ReferralTracker(session)
        referral = await tracker.create(referrer.id, "first@example.com")

        await tracker.attach_registration(referral.id, first.id)
        await tracker.attach_registration(referral.id, first.id)

        with pytest.raises(ReferralValidationError):
            await tracker.attach_registration(referral.id, second.id)


@pytest.mark.asyncio
async def test_stats_without_completions_report_no_top_referrer(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "lonely@example.com")
        tracker = ReferralTracker(session)
        await tracker.create(referrer.id, "maybe@example.com")

        stats = await tracker.stats()

        assert stats.total == 1
        assert stats.pending == 1
        assert stats.conversion_rate == 0.0
        assert stats.top_referrer.name == NO_TOP_REFERRER
        assert stats.top_referrer.user_id is None
        assert stats.referrals_this_month == 1
        assert stats.monthly_growth == 100.0


@pytest.mark.asyncio
async def test_stats_and_rankings_follow_completions(session_factory, make_user) -> None:
    async with session_factory() as session:
        star = await make_user(session, "star@example.com", display_name="Star Seller")
        casual = await make_user(session, "casual@example.com")
        tracker = ReferralTracker(session)

        for index in range(3):
            referral = await tracker.create(star.id, f"star-{index}@example.com", reward_points=100)
            if index < 2:
                await tracker.complete(referral.id)
        casual_referral = await tracker.create(casual.id, "casual-1@example.com", reward_points=100)
        await tracker.cancel(casual_referral.id)
        await session.commit()

        stats = await tracker.stats()
        assert stats.total == 4
        assert stats.completed == 2
        assert stats.cancelled == 1
        assert stats.conversion_rate == 50.0
        assert stats.total_points_awarded == 200
        assert stats.top_referrer.name == "Star Seller"

        ranking = await tracker.top_referrers(limit=5)
        assert [row.user_id for row in ranking] == [star.id, casual.id]
        assert ranking[0].completed_referrals == 2
        assert ranking[0].total_points == 200
        assert ranking[0].conversion_rate == pytest.approx(66.67)
        assert ranking[1].name == "casual"


@pytest.mark.asyncio
async def test_summary_reports_milestones_and_link(session_factory, make_user, monkeypatch) -> None:
    monkeypatch.setattr(settings, "frontend_url", "https://painel.example.com/")
    async with session_factory() as session:
        referrer = await make_user(session, "summary@example.com")
        tracker = ReferralTracker(session)
        for index in range(5):
            referral = await tracker.create(referrer.id, f"lead-{index}@example.com", reward_points=50)
            await tracker.complete(referral.id)
        await tracker.create(referrer.id, "pending@example.com")

        summary = await tracker.summary_for(referrer.id)

        assert summary.total == 6
        assert summary.completed == 5
        assert summary.pending == 1
        assert summary.points_earned == 250
        assert summary.referral_link == f"https://painel.example.com/register?ref={summary.referral_code}"
        assert [(item.target, item.reached) for item in summary.milestones] == [(1, True), (5, True), (10, False)]


@pytest.mark.asyncio
async def test_list_referrals_filters_by_status_and_search(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "lister@example.com", display_name="Lister")
        tracker = ReferralTracker(session)
        first = await tracker.create(referrer.id, "alpha@example.com")
        await tracker.create(referrer.id, "beta@example.com")
        await tracker.complete(first.id)

        completed, _ = await tracker.list_referrals(status=ReferralStatus.COMPLETED)
        assert [item.id for item in completed] == [first.id]

        found, _ = await tracker.list_referrals(search="BETA")
        assert [item.referred_email for item in found] == ["beta@example.com"]

        by_referrer, _ = await tracker.list_referrals(search="lister")
        assert len(by_referrer) == 2

        page, cursor = await tracker.list_referrals(limit=1)
        assert len(page) == 1 and cursor is not None
        rest, end = await tracker.list_referrals(limit=1, cursor=cursor)
        assert len(rest) == 1 and end is None
        assert rest[0].id != page[0].id

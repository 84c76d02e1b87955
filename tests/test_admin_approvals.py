import pytest

from iptv_manager_api.models.loyalty import RedemptionStatus, ReferralStatus
from iptv_manager_api.observability.loyalty import get_loyalty_store
from iptv_manager_api.services.loyalty import (
    AdminApprovalGateway,
    ApprovalAction,
    ApprovalForbiddenError,
    ApprovalRequest,
    ApprovalTarget,
    LoyaltyValidationError,
    PointsLedger,
    RedemptionService,
    ReferralTracker,
    RewardCatalog,
)


@pytest.mark.asyncio
async def test_non_admin_cannot_approve(session_factory, make_user) -> None:
    async with session_factory() as session:
        referrer = await make_user(session, "client@example.com")
        referral = await ReferralTracker(session).create(referrer.id, "friend@example.com")
        gateway = AdminApprovalGateway(session)

        with pytest.raises(ApprovalForbiddenError) as excinfo:
            await gateway.submit(
                ApprovalRequest(
                    target=ApprovalTarget.REFERRAL,
                    action=ApprovalAction.COMPLETE,
                    target_id=referral.id,
                    actor=referrer,
                )
            )

        assert excinfo.value.status_code == 403
        assert referral.status == ReferralStatus.PENDING
        assert (await PointsLedger(session).balance(referrer.id)).current_points == 0


@pytest.mark.asyncio
async def test_actions_must_match_target(session_factory, make_user) -> None:
    async with session_factory() as session:
        admin = await make_user(session, "admin@example.com", admin=True)
        referrer = await make_user(session, "client@example.com")
        referral = await ReferralTracker(session).create(referrer.id, "friend@example.com")

        with pytest.raises(LoyaltyValidationError):
            await AdminApprovalGateway(session).submit(
                ApprovalRequest(
                    target=ApprovalTarget.REFERRAL,
                    action=ApprovalAction.USE,
                    target_id=referral.id,
                    actor=admin,
                )
            )


@pytest.mark.asyncio
async def test_admin_decisions_reach_the_owning_service(session_factory, make_user) -> None:
    async with session_factory() as session:
        admin = await make_user(session, "admin@example.com", admin=True)
        member = await make_user(session, "member@example.com")
        gateway = AdminApprovalGateway(session)

        referral = await ReferralTracker(session).create(member.id, "friend@example.com", reward_points=700)
        completed = await gateway.submit(
            ApprovalRequest(
                target=ApprovalTarget.REFERRAL,
                action=ApprovalAction.COMPLETE,
                target_id=referral.id,
                actor=admin,
                subscription_plan="Anual",
            )
        )
        assert completed.status == ReferralStatus.COMPLETED
        assert completed.subscription_plan == "Anual"

        reward = await RewardCatalog(session).create(title="Cupom", points_cost=300, category="discount", stock=2)
        redemption = await RedemptionService(session).redeem(member.id, reward.id)

        approved = await gateway.submit(
            ApprovalRequest(
                target=ApprovalTarget.REDEMPTION,
                action=ApprovalAction.APPROVE,
                target_id=redemption.id,
                actor=admin,
            )
        )
        assert approved.status == RedemptionStatus.APPROVED

        used = await gateway.submit(
            ApprovalRequest(
                target=ApprovalTarget.REDEMPTION,
                action=ApprovalAction.USE,
                target_id=redemption.id,
                actor=admin,
                note="Entregue",
            )
        )
        assert used.status == RedemptionStatus.USED
        assert (await PointsLedger(session).balance(member.id)).current_points == 400

        approvals = get_loyalty_store().snapshot().approvals
        assert approvals["total"] == 3
        assert approvals["referral:complete"] == 1
        assert approvals["redemption:use"] == 1

from datetime import timedelta

import pytest

from iptv_manager_api.jobs.loyalty import expire_redemptions
from iptv_manager_api.models.loyalty import Redemption, RedemptionStatus
from iptv_manager_api.services.loyalty import PointsLedger, RedemptionService, RewardCatalog
from iptv_manager_api.services.loyalty.common import utcnow


async def _seed_redemptions(session_factory, make_user, count: int):
    async with session_factory() as session:
        user = await make_user(session, "expiring@example.com")
        await PointsLedger(session).adjust(user.id, 1000, note="Seed")
        reward = await RewardCatalog(session).create(
            title="Conexão extra", points_cost=100, category="premium", stock=10
        )
        service = RedemptionService(session)
        redemption_ids = [(await service.redeem(user.id, reward.id)).id for _ in range(count)]
        await session.commit()
        return user.id, reward.id, redemption_ids


@pytest.mark.asyncio
async def test_sweep_expires_due_redemptions_and_reverses_them(session_factory, make_user) -> None:
    user_id, reward_id, redemption_ids = await _seed_redemptions(session_factory, make_user, 2)
    async with session_factory() as session:
        await RedemptionService(session).approve(redemption_ids[1])
        await session.commit()

    summary = await expire_redemptions(session_factory=session_factory, now=utcnow() + timedelta(days=90))

    assert summary == {"due": 2, "expired": 2, "skipped": 0, "failed": 0, "failed_ids": []}
    async with session_factory() as session:
        for redemption_id in redemption_ids:
            redemption = await session.get(Redemption, redemption_id)
            assert redemption.status == RedemptionStatus.EXPIRED
        reward = await RewardCatalog(session).get(reward_id)
        assert reward.stock == 10
        assert reward.total_redeemed == 0
        assert (await PointsLedger(session).balance(user_id)).current_points == 1000


@pytest.mark.asyncio
async def test_sweep_ignores_redemptions_not_yet_due(session_factory, make_user) -> None:
    _, _, redemption_ids = await _seed_redemptions(session_factory, make_user, 1)

    summary = await expire_redemptions(session_factory=session_factory)

    assert summary["due"] == 0
    async with session_factory() as session:
        redemption = await session.get(Redemption, redemption_ids[0])
        assert redemption.status == RedemptionStatus.PENDING


@pytest.mark.asyncio
async def test_sweep_counts_compensation_failures_and_continues(session_factory, make_user) -> None:
    _, _, redemption_ids = await _seed_redemptions(session_factory, make_user, 2)
    async with session_factory() as session:
        broken = await session.get(Redemption, redemption_ids[0])
        broken.reward_id = None
        await session.commit()

    summary = await expire_redemptions(session_factory=session_factory, now=utcnow() + timedelta(days=90))

    assert summary["expired"] == 1
    assert summary["failed"] == 1
    assert summary["failed_ids"] == [str(redemption_ids[0])]
    async with session_factory() as session:
        broken = await session.get(Redemption, redemption_ids[0])
        assert broken.status == RedemptionStatus.PENDING

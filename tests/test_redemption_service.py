import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import LedgerReason, RedemptionStatus
from iptv_manager_api.observability.loyalty import get_loyalty_store
from iptv_manager_api.services.loyalty import (
    CompensationError,
    InsufficientPointsError,
    InvalidTransitionError,
    LoyaltyError,
    OutOfStockError,
    PointsLedger,
    RedemptionService,
    RequestReplayConflictError,
    RewardCatalog,
    RewardUnavailableError,
    commit_or_raise,
    run_with_storage_retry,
)
from iptv_manager_api.services.loyalty.common import as_utc, utcnow


async def _seed(session, make_user, *, email="member@example.com", points=1000, stock=5, **reward_fields):
    user = await make_user(session, email)
    if points:
        await PointsLedger(session).adjust(user.id, points, note="Seed")
    reward = await RewardCatalog(session).create(
        title=reward_fields.pop("title", "1 mês grátis"),
        points_cost=reward_fields.pop("points_cost", 400),
        category=reward_fields.pop("category", "service"),
        stock=stock,
        **reward_fields,
    )
    return user, reward


@pytest.mark.asyncio
async def test_redeem_debits_points_and_takes_stock(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        service = RedemptionService(session)

        redemption = await service.redeem(user.id, reward.id)
        await session.commit()

        assert redemption.status == RedemptionStatus.PENDING
        assert redemption.points_spent == 400
        assert redemption.reward_title == "1 mês grátis"
        assert redemption.code.startswith("RDM-") and len(redemption.code) == 14
        assert redemption.stock_reserved is True
        assert redemption.approved_at is None
        validity = as_utc(redemption.expires_at) - as_utc(redemption.redeemed_at)
        assert validity == timedelta(days=settings.redemption_validity_days)

        ledger = PointsLedger(session)
        balance = await ledger.balance(user.id)
        assert balance.current_points == 600
        assert balance.lifetime_earned == 1000
        debit = await ledger.find_entry(LedgerReason.REDEMPTION, redemption.id)
        assert debit is not None and debit.points == -400

        assert reward.stock == 4
        assert reward.total_redeemed == 1
        assert get_loyalty_store().snapshot().redemptions["created"] == 1


@pytest.mark.asyncio
async def test_redeem_is_capped_by_reward_expiry(session_factory, make_user) -> None:
    async with session_factory() as session:
        soon = utcnow() + timedelta(days=2)
        user, reward = await _seed(session, make_user, expires_at=soon)

        redemption = await RedemptionService(session).redeem(user.id, reward.id)

        assert as_utc(redemption.expires_at) == soon


@pytest.mark.asyncio
async def test_redeem_with_insufficient_points_changes_nothing(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user, points=300)

        with pytest.raises(InsufficientPointsError) as excinfo:
            await RedemptionService(session).redeem(user.id, reward.id)

        assert excinfo.value.shortfall == 100
        assert reward.stock == 5
        assert reward.total_redeemed == 0
        assert (await PointsLedger(session).balance(user.id)).current_points == 300


@pytest.mark.asyncio
async def test_redeem_rejects_unavailable_rewards(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, sold_out = await _seed(session, make_user, stock=0)
        catalog = RewardCatalog(session)
        inactive = await catalog.create(title="Off", points_cost=10, category="discount", active=False)
        expired = await catalog.create(
            title="Old", points_cost=10, category="discount", expires_at=utcnow() - timedelta(hours=1)
        )
        service = RedemptionService(session)

        with pytest.raises(OutOfStockError):
            await service.redeem(user.id, sold_out.id)
        with pytest.raises(RewardUnavailableError) as inactive_error:
            await service.redeem(user.id, inactive.id)
        with pytest.raises(RewardUnavailableError) as expired_error:
            await service.redeem(user.id, expired.id)

        assert inactive_error.value.extra["reason"] == "inactive"
        assert expired_error.value.extra["reason"] == "expired"
        assert (await PointsLedger(session).balance(user.id)).current_points == 1000


@pytest.mark.asyncio
async def test_redeem_replays_request_id(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        service = RedemptionService(session)

        first = await service.redeem(user.id, reward.id, request_id="req-1")
        replay = await service.redeem(user.id, reward.id, request_id="req-1")
        other = await service.redeem(user.id, reward.id, request_id="req-2")

        assert replay.id == first.id
        assert other.id != first.id
        assert (await PointsLedger(session).balance(user.id)).current_points == 200
        assert reward.stock == 3


@pytest.mark.asyncio
async def test_request_id_reused_for_another_reward_is_refused(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        other_reward = await RewardCatalog(session).create(
            title="Canal premium", points_cost=300, category="premium", stock=2
        )
        service = RedemptionService(session)
        first = await service.redeem(user.id, reward.id, request_id="req-1")

        with pytest.raises(RequestReplayConflictError) as excinfo:
            await service.redeem(user.id, other_reward.id, request_id="req-1")

        assert excinfo.value.status_code == 409
        assert excinfo.value.extra["redemption_id"] == str(first.id)
        assert other_reward.stock == 2
        assert other_reward.total_redeemed == 0
        assert (await PointsLedger(session).balance(user.id)).current_points == 600


@pytest.mark.asyncio
async def test_auto_approved_categories_skip_review(session_factory, make_user, monkeypatch) -> None:
    monkeypatch.setattr(settings, "redemption_auto_approve_categories", ["discount"])
    async with session_factory() as session:
        user, reward = await _seed(session, make_user, category="discount")

        redemption = await RedemptionService(session).redeem(user.id, reward.id)

        assert redemption.status == RedemptionStatus.APPROVED
        assert redemption.approved_at is not None


@pytest.mark.asyncio
async def test_reject_restores_points_stock_and_counter(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        service = RedemptionService(session)
        redemption = await service.redeem(user.id, reward.id)

        rejected = await service.reject(redemption.id)
        await session.commit()

        assert rejected.status == RedemptionStatus.CANCELLED
        assert rejected.cancelled_at is not None
        assert reward.stock == 5
        assert reward.total_redeemed == 0

        ledger = PointsLedger(session)
        balance = await ledger.balance(user.id)
        assert balance.current_points == 1000
        # reversal credits count toward lifetime like any other credit
        assert balance.lifetime_earned == 1400
        assert await ledger.projected_balance(user.id) == balance
        reversal = await ledger.find_entry(LedgerReason.REDEMPTION_REVERSAL, redemption.id)
        assert reversal is not None and reversal.points == 400


@pytest.mark.asyncio
async def test_reject_refunds_approved_redemption(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        service = RedemptionService(session)
        redemption = await service.redeem(user.id, reward.id)
        await service.approve(redemption.id)

        rejected = await service.reject(redemption.id)

        assert rejected.status == RedemptionStatus.CANCELLED
        assert reward.stock == 5
        assert reward.total_redeemed == 0
        assert (await PointsLedger(session).balance(user.id)).current_points == 1000


@pytest.mark.asyncio
async def test_expire_reverses_approved_redemption(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        service = RedemptionService(session)
        redemption = await service.redeem(user.id, reward.id)
        await service.approve(redemption.id)

        due = await service.due_for_expiry(now=utcnow() + timedelta(days=settings.redemption_validity_days + 1))
        assert due == [redemption.id]
        assert await service.due_for_expiry(now=utcnow()) == []

        expired = await service.expire(redemption.id)

        assert expired.status == RedemptionStatus.EXPIRED
        assert reward.stock == 5
        assert (await PointsLedger(session).balance(user.id)).current_points == 1000


@pytest.mark.asyncio
async def test_state_machine_rejects_invalid_transitions(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        service = RedemptionService(session)
        redemption = await service.redeem(user.id, reward.id)

        with pytest.raises(InvalidTransitionError):
            await service.mark_used(redemption.id)

        await service.approve(redemption.id)
        with pytest.raises(InvalidTransitionError):
            await service.approve(redemption.id)

        used = await service.mark_used(redemption.id)
        assert used.status == RedemptionStatus.USED
        assert used.used_at is not None
        with pytest.raises(InvalidTransitionError):
            await service.expire(redemption.id)
        with pytest.raises(InvalidTransitionError):
            await service.reject(redemption.id)

        # used redemptions keep their points spent
        assert (await PointsLedger(session).balance(user.id)).current_points == 600
        assert reward.total_redeemed == 1


@pytest.mark.asyncio
async def test_reversal_without_reward_is_a_compensation_failure(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user)
        service = RedemptionService(session)
        redemption = await service.redeem(user.id, reward.id)
        redemption.reward_id = None
        await session.flush()

        with pytest.raises(CompensationError):
            await service.reject(redemption.id)

        failures = get_loyalty_store().snapshot().compensation_failures
        assert [item["redemption_id"] for item in failures] == [str(redemption.id)]
        assert redemption.status == RedemptionStatus.PENDING


@pytest.mark.asyncio
async def test_list_for_user_filters_statuses(session_factory, make_user) -> None:
    async with session_factory() as session:
        user, reward = await _seed(session, make_user, points=2000)
        service = RedemptionService(session)
        first = await service.redeem(user.id, reward.id)
        second = await service.redeem(user.id, reward.id)
        await service.reject(first.id)

        pending, _ = await service.list_for_user(user.id, statuses=[RedemptionStatus.PENDING])
        assert [item.id for item in pending] == [second.id]

        page, cursor = await service.list_for_user(user.id, limit=1)
        assert len(page) == 1 and cursor is not None

        by_reward, _ = await service.list_redemptions(reward_id=reward.id)
        assert {item.id for item in by_reward} == {first.id, second.id}
        assert await service.list_redemptions(reward_id=uuid4()) == ([], None)


@pytest.mark.asyncio
async def test_last_unit_goes_to_exactly_one_redeemer(file_session_factory, make_user) -> None:
    async with file_session_factory() as setup:
        first_user, reward = await _seed(setup, make_user, email="first@example.com", stock=1)
        second_user = await make_user(setup, "second@example.com")
        await PointsLedger(setup).adjust(second_user.id, 1000, note="Seed")
        await setup.commit()
        reward_id = reward.id
        first_id, second_id = first_user.id, second_user.id

    async with file_session_factory() as session_a, file_session_factory() as session_b:
        # B reads the reward while one unit is still left
        stale = await RewardCatalog(session_b).get(reward_id)
        assert stale.stock == 1

        await RedemptionService(session_a).redeem(first_id, reward_id)
        await session_a.commit()

        with pytest.raises(OutOfStockError):
            await RedemptionService(session_b).redeem(second_id, reward_id)
        await session_b.rollback()

    async with file_session_factory() as check:
        reward = await RewardCatalog(check).get(reward_id)
        assert reward.stock == 0
        assert reward.total_redeemed == 1
        assert (await PointsLedger(check).balance(second_id)).current_points == 1000


@pytest.mark.asyncio
async def test_same_user_cannot_overspend_from_two_sessions(file_session_factory, make_user) -> None:
    async with file_session_factory() as setup:
        user, reward = await _seed(setup, make_user, points=400, stock=None)
        await setup.commit()
        user_id, reward_id = user.id, reward.id

    async with file_session_factory() as session_a, file_session_factory() as session_b:
        # B caches the account balance before A spends it
        assert (await PointsLedger(session_b).balance(user_id)).current_points == 400

        await RedemptionService(session_a).redeem(user_id, reward_id)
        await session_a.commit()

        with pytest.raises(InsufficientPointsError):
            await RedemptionService(session_b).redeem(user_id, reward_id)
        await session_b.rollback()

    async with file_session_factory() as check:
        ledger = PointsLedger(check)
        assert (await ledger.balance(user_id)).current_points == 0
        assert await ledger.projected_balance(user_id) == await ledger.balance(user_id)


async def _redeem_in_own_session(factory, user_id, reward_id, *, request_id=None):
    async with factory() as session:

        async def _attempt():
            redemption = await RedemptionService(session).redeem(user_id, reward_id, request_id=request_id)
            await commit_or_raise(session, operation="redemption:create")
            return redemption.id

        try:
            return await run_with_storage_retry(
                session, _attempt, name="redemption:create", attempts=3, base_backoff_seconds=0
            )
        except LoyaltyError as error:
            await session.rollback()
            return type(error).__name__


@pytest.mark.asyncio
async def test_simultaneous_redeems_of_last_unit(file_session_factory, make_user) -> None:
    async with file_session_factory() as setup:
        first_user, reward = await _seed(setup, make_user, email="first@example.com", stock=1)
        second_user = await make_user(setup, "second@example.com")
        await PointsLedger(setup).adjust(second_user.id, 1000, note="Seed")
        await setup.commit()
        reward_id = reward.id
        user_ids = [first_user.id, second_user.id]

    outcomes = await asyncio.gather(
        *(_redeem_in_own_session(file_session_factory, user_id, reward_id) for user_id in user_ids)
    )

    assert sorted(isinstance(outcome, str) for outcome in outcomes) == [False, True]
    assert [outcome for outcome in outcomes if isinstance(outcome, str)] == ["OutOfStockError"]
    async with file_session_factory() as check:
        reward = await RewardCatalog(check).get(reward_id)
        assert reward.stock == 0
        assert reward.total_redeemed == 1
        balances = [(await PointsLedger(check).balance(user_id)).current_points for user_id in user_ids]
        assert sorted(balances) == [600, 1000]


@pytest.mark.asyncio
async def test_simultaneous_redeems_cannot_overspend(file_session_factory, make_user) -> None:
    async with file_session_factory() as setup:
        user, reward = await _seed(setup, make_user, points=400, stock=None)
        await setup.commit()
        user_id, reward_id = user.id, reward.id

    outcomes = await asyncio.gather(
        _redeem_in_own_session(file_session_factory, user_id, reward_id),
        _redeem_in_own_session(file_session_factory, user_id, reward_id),
    )

    assert [outcome for outcome in outcomes if isinstance(outcome, str)] == ["InsufficientPointsError"]
    async with file_session_factory() as check:
        ledger = PointsLedger(check)
        assert (await ledger.balance(user_id)).current_points == 0
        assert (await RewardCatalog(check).get(reward_id)).total_redeemed == 1


@pytest.mark.asyncio
async def test_simultaneous_redeems_with_same_request_id_share_one_redemption(
    file_session_factory, make_user
) -> None:
    async with file_session_factory() as setup:
        user, reward = await _seed(setup, make_user)
        await setup.commit()
        user_id, reward_id = user.id, reward.id

    outcomes = await asyncio.gather(
        _redeem_in_own_session(file_session_factory, user_id, reward_id, request_id="same-key"),
        _redeem_in_own_session(file_session_factory, user_id, reward_id, request_id="same-key"),
    )

    assert not any(isinstance(outcome, str) for outcome in outcomes)
    assert outcomes[0] == outcomes[1]
    async with file_session_factory() as check:
        redemptions, _ = await RedemptionService(check).list_for_user(user_id)
        assert [item.id for item in redemptions] == [outcomes[0]]
        reward = await RewardCatalog(check).get(reward_id)
        assert reward.stock == 4
        assert reward.total_redeemed == 1
        assert (await PointsLedger(check).balance(user_id)).current_points == 600

"""Reward redemption protocol and its compensating reversals."""

from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta
from typing import Sequence, Tuple
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import LedgerReason, Redemption, RedemptionStatus, Reward
from iptv_manager_api.observability.loyalty import get_loyalty_store

from .catalog import RewardCatalog
from .common import as_utc, bounded_limit, utcnow
from .errors import (
    CompensationError,
    DuplicateCreditError,
    InsufficientPointsError,
    InvalidTransitionError,
    LoyaltyError,
    LoyaltyNotFoundError,
    OutOfStockError,
    RequestReplayConflictError,
    RewardUnavailableError,
    StorageError,
)
from .ledger import PointsLedger
from .persistence import flush_or_raise

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_REVERSIBLE = (RedemptionStatus.PENDING, RedemptionStatus.APPROVED)


class RedemptionService:
    """Orchestrate redemptions across the ledger and the reward catalog.

    ``redeem`` takes the stock unit, debits the ledger, bumps the reward
    counter and inserts the redemption inside the caller's transaction. If the
    debit fails after the stock was taken the unit is handed back before the
    error propagates, so a failed call never leaves partial state behind in
    the session.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        catalog: RewardCatalog | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger or PointsLedger(session)
        self._catalog = catalog or RewardCatalog(session)
        self._observability = get_loyalty_store()

    async def get(self, redemption_id: UUID) -> Redemption:
        redemption = await self._db.get(Redemption, redemption_id)
        if redemption is None:
            raise LoyaltyNotFoundError("Redemption not found", redemption_id=str(redemption_id))
        return redemption

    async def redeem(self, user_id: UUID, reward_id: UUID, *, request_id: str | None = None) -> Redemption:
        if request_id:
            replay = await self._find_by_request(user_id, request_id)
            if replay is not None:
                if replay.reward_id != reward_id:
                    raise RequestReplayConflictError(
                        "Request id was already used to redeem a different reward",
                        request_id=request_id,
                        redemption_id=str(replay.id),
                    )
                logger.info(
                    "Replayed redemption request",
                    redemption_id=str(replay.id),
                    user_id=str(user_id),
                    request_id=request_id,
                )
                return replay

        reward = await self._catalog.get(reward_id)
        availability = self._catalog.availability(reward)
        if availability.reason == "out_of_stock":
            self._observability.record_redemption_event("out_of_stock")
            raise OutOfStockError("Reward is out of stock", reward_id=str(reward_id))
        if not availability.redeemable:
            self._observability.record_redemption_event("unavailable")
            raise RewardUnavailableError(
                "Reward is not available for redemption",
                reward_id=str(reward_id),
                reason=availability.reason,
            )

        points_cost = reward.points_cost
        balance = await self._ledger.balance(user_id)
        if balance.current_points < points_cost:
            self._observability.record_redemption_event("insufficient_points")
            raise InsufficientPointsError(required=points_cost, available=balance.current_points)

        if not await self._catalog.decrement_stock(reward_id):
            self._observability.record_redemption_event("out_of_stock")
            raise OutOfStockError("Reward sold out while redeeming", reward_id=str(reward_id))
        stock_reserved = reward.stock is not None

        redemption_id = uuid4()
        try:
            await self._ledger.debit(user_id, points_cost, LedgerReason.REDEMPTION, redemption_id)
        except LoyaltyError:
            # storage failures roll the session back, which already undid the decrement
            if stock_reserved and self._db.in_transaction():
                await self._catalog.restore_stock(reward_id)
            raise
        await self._catalog.adjust_redeemed_count(reward_id, 1)

        now = utcnow()
        auto_approve = reward.category.value in settings.redemption_auto_approve_categories
        redemption = Redemption(
            id=redemption_id,
            user_id=user_id,
            reward_id=reward_id,
            reward_title=reward.title,
            points_spent=points_cost,
            status=RedemptionStatus.APPROVED if auto_approve else RedemptionStatus.PENDING,
            code=self._generate_code(),
            request_id=request_id,
            stock_reserved=stock_reserved,
            redeemed_at=now,
            approved_at=now if auto_approve else None,
            expires_at=self._expiry_for(reward, now),
        )
        self._db.add(redemption)
        try:
            await flush_or_raise(self._db, operation="redemption:create")
        except IntegrityError as error:
            # a concurrent call with the same request id committed first; a retry replays it
            await self._db.rollback()
            logger.warning(
                "Redemption insert conflicted",
                user_id=str(user_id),
                reward_id=str(reward_id),
                request_id=request_id,
            )
            raise StorageError(
                "Concurrent redemption conflicted on insert",
                reward_id=str(reward_id),
                request_id=request_id,
            ) from error

        self._observability.record_redemption_event("created")
        logger.info(
            "Reward redeemed",
            redemption_id=str(redemption.id),
            user_id=str(user_id),
            reward_id=str(reward_id),
            points_spent=points_cost,
            status=redemption.status.value,
        )
        return redemption

    async def approve(self, redemption_id: UUID) -> Redemption:
        redemption = await self.get(redemption_id)
        self._require_status(redemption, (RedemptionStatus.PENDING,), RedemptionStatus.APPROVED)
        redemption.status = RedemptionStatus.APPROVED
        redemption.approved_at = utcnow()
        await flush_or_raise(self._db, operation="redemption:approve")
        self._observability.record_redemption_event("approved")
        logger.info("Redemption approved", redemption_id=str(redemption_id))
        return redemption

    async def reject(self, redemption_id: UUID) -> Redemption:
        """Cancel a pending or approved redemption, giving back the points and the stock unit."""

        redemption = await self.get(redemption_id)
        self._require_status(redemption, _REVERSIBLE, RedemptionStatus.CANCELLED)
        await self._reverse(redemption, RedemptionStatus.CANCELLED)
        self._observability.record_redemption_event("rejected")
        return redemption

    async def mark_used(self, redemption_id: UUID) -> Redemption:
        redemption = await self.get(redemption_id)
        self._require_status(redemption, (RedemptionStatus.APPROVED,), RedemptionStatus.USED)
        redemption.status = RedemptionStatus.USED
        redemption.used_at = utcnow()
        await flush_or_raise(self._db, operation="redemption:use")
        self._observability.record_redemption_event("used")
        logger.info("Redemption marked as used", redemption_id=str(redemption_id))
        return redemption

    async def expire(self, redemption_id: UUID) -> Redemption:
        redemption = await self.get(redemption_id)
        self._require_status(redemption, _REVERSIBLE, RedemptionStatus.EXPIRED)
        await self._reverse(redemption, RedemptionStatus.EXPIRED)
        self._observability.record_redemption_event("expired")
        return redemption

    async def due_for_expiry(self, *, now: datetime | None = None, limit: int = 500) -> list[UUID]:
        reference = now or utcnow()
        stmt = (
            select(Redemption.id)
            .where(
                Redemption.status.in_(_REVERSIBLE),
                Redemption.expires_at.is_not(None),
                Redemption.expires_at <= reference,
            )
            .order_by(Redemption.expires_at.asc())
            .limit(max(limit, 1))
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_for_user(
        self,
        user_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        statuses: Sequence[RedemptionStatus] | None = None,
    ) -> tuple[list[Redemption], Tuple[datetime, UUID] | None]:
        return await self._paginate(
            select(Redemption).where(Redemption.user_id == user_id),
            limit=limit,
            cursor=cursor,
            statuses=statuses,
        )

    async def list_redemptions(
        self,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        statuses: Sequence[RedemptionStatus] | None = None,
        reward_id: UUID | None = None,
    ) -> tuple[list[Redemption], Tuple[datetime, UUID] | None]:
        stmt = select(Redemption)
        if reward_id is not None:
            stmt = stmt.where(Redemption.reward_id == reward_id)
        return await self._paginate(stmt, limit=limit, cursor=cursor, statuses=statuses)

    async def _paginate(
        self,
        stmt,
        *,
        limit: int,
        cursor: Tuple[datetime, UUID] | None,
        statuses: Sequence[RedemptionStatus] | None,
    ) -> tuple[list[Redemption], Tuple[datetime, UUID] | None]:
        page_size = bounded_limit(limit)
        stmt = stmt.order_by(Redemption.redeemed_at.desc(), Redemption.id.desc())
        if statuses:
            stmt = stmt.where(Redemption.status.in_(list(statuses)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    Redemption.redeemed_at < cursor_time,
                    and_(Redemption.redeemed_at == cursor_time, Redemption.id < cursor_id),
                )
            )
        result = await self._db.execute(stmt.limit(page_size + 1))
        rows = list(result.scalars().all())
        items = rows[:page_size]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > page_size and items:
            tail = items[-1]
            next_cursor = (tail.redeemed_at, tail.id)
        return items, next_cursor

    async def _reverse(self, redemption: Redemption, target: RedemptionStatus) -> None:
        context = {
            "redemption_id": str(redemption.id),
            "user_id": str(redemption.user_id),
            "reward_id": str(redemption.reward_id) if redemption.reward_id else None,
            "points_spent": redemption.points_spent,
        }
        reward: Reward | None = None
        if redemption.reward_id is not None:
            reward = await self._db.get(Reward, redemption.reward_id)
        if redemption.stock_reserved and reward is None:
            await self._compensation_failed(context, "reward missing; reserved stock cannot be restored")
        restore_stock = redemption.stock_reserved
        if restore_stock and reward is not None and reward.stock is None:
            logger.warning("Reward switched to unlimited stock; nothing to restore", **context)
            restore_stock = False

        try:
            await self._ledger.credit(
                redemption.user_id,
                redemption.points_spent,
                LedgerReason.REDEMPTION_REVERSAL,
                redemption.id,
                note=f"Reversal of redemption {redemption.code}",
            )
        except DuplicateCreditError as error:
            if not self._db.in_transaction():
                # lost the race to another reversal; the session was rolled back
                raise StorageError("Concurrent reversal detected", **context) from error
            logger.warning("Redemption points already reversed", **context)

        if reward is not None:
            if restore_stock and not await self._catalog.restore_stock(reward.id):
                await self._compensation_failed(context, "stock restore affected no rows", rollback=True)
            await self._catalog.adjust_redeemed_count(reward.id, -1)

        redemption.status = target
        if target == RedemptionStatus.CANCELLED:
            redemption.cancelled_at = utcnow()
        await flush_or_raise(self._db, operation=f"redemption:{target.value}")
        logger.info(
            "Redemption reversed",
            status=target.value,
            stock_restored=restore_stock,
            **context,
        )

    async def _compensation_failed(self, context: dict[str, object], reason: str, *, rollback: bool = False) -> None:
        if rollback:
            await self._db.rollback()
        self._observability.record_compensation_failure(str(context["redemption_id"]), reason)
        logger.critical(
            "Redemption compensation failed; manual reconciliation required",
            reason=reason,
            **context,
        )
        raise CompensationError(
            "Redemption could not be reversed",
            redemption_id=context["redemption_id"],
            reason=reason,
        )

    def _require_status(
        self,
        redemption: Redemption,
        allowed: Sequence[RedemptionStatus],
        target: RedemptionStatus,
    ) -> None:
        if redemption.status not in allowed:
            raise InvalidTransitionError("redemption", redemption.id, redemption.status.value, target.value)

    async def _find_by_request(self, user_id: UUID, request_id: str) -> Redemption | None:
        stmt = select(Redemption).where(Redemption.user_id == user_id, Redemption.request_id == request_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    def _expiry_for(self, reward: Reward, now: datetime) -> datetime | None:
        candidates: list[datetime] = []
        if settings.redemption_validity_days > 0:
            candidates.append(now + timedelta(days=settings.redemption_validity_days))
        reward_expiry = as_utc(reward.expires_at)
        if reward_expiry is not None:
            candidates.append(reward_expiry)
        return min(candidates) if candidates else None

    @staticmethod
    def _generate_code() -> str:
        return "RDM-" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(10))


__all__ = ["RedemptionService"]

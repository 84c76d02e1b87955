"""Reward catalog with stock counters, expiry and activation flags."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import Redemption, RedemptionStatus, Reward, RewardCategory

from .common import as_utc, utcnow
from .errors import LoyaltyNotFoundError, LoyaltyValidationError, RewardInUseError
from .persistence import flush_or_raise

AvailabilityStatus = Literal["available", "limited", "unavailable"]

_EDITABLE_FIELDS = frozenset(
    {"title", "description", "points_cost", "category", "value", "stock", "expires_at", "terms", "active"}
)
_rewards = Reward.__table__


@dataclass(frozen=True)
class RewardAvailability:
    status: AvailabilityStatus
    remaining: int | None
    reason: str | None = None

    @property
    def redeemable(self) -> bool:
        return self.status != "unavailable"


class RewardCatalog:
    """Administer rewards and own the atomic stock counters."""

    def __init__(self, session: AsyncSession, *, low_stock_threshold: int | None = None) -> None:
        self._db = session
        self._low_stock_threshold = (
            low_stock_threshold if low_stock_threshold is not None else settings.reward_low_stock_threshold
        )

    async def get(self, reward_id: UUID) -> Reward:
        reward = await self._db.get(Reward, reward_id)
        if reward is None:
            raise LoyaltyNotFoundError("Reward not found", reward_id=str(reward_id))
        return reward

    async def list_rewards(
        self,
        *,
        category: RewardCategory | None = None,
        include_inactive: bool = False,
    ) -> list[Reward]:
        stmt = select(Reward).order_by(Reward.points_cost.asc(), Reward.title.asc())
        if category is not None:
            stmt = stmt.where(Reward.category == category)
        if not include_inactive:
            stmt = stmt.where(Reward.active.is_(True))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        *,
        title: str,
        points_cost: int,
        category: RewardCategory | str,
        description: str | None = None,
        value: str | None = None,
        stock: int | None = None,
        expires_at: datetime | None = None,
        terms: Sequence[str] | None = None,
        active: bool = True,
    ) -> Reward:
        fields = self._validate_fields(
            {
                "title": title,
                "points_cost": points_cost,
                "category": category,
                "description": description,
                "value": value,
                "stock": stock,
                "expires_at": expires_at,
                "terms": list(terms or []),
                "active": active,
            }
        )
        reward = Reward(total_redeemed=0, **fields)
        self._db.add(reward)
        await flush_or_raise(self._db, operation="reward:create")
        logger.info("Created reward", reward_id=str(reward.id), title=reward.title, points_cost=reward.points_cost)
        return reward

    async def update(self, reward_id: UUID, **changes: Any) -> Reward:
        """Edit catalog fields; existing redemptions keep their frozen price."""

        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise LoyaltyValidationError(f"Unsupported reward fields: {', '.join(sorted(unknown))}")
        reward = await self.get(reward_id)
        for field_name, field_value in self._validate_fields(changes).items():
            setattr(reward, field_name, field_value)
        await flush_or_raise(self._db, operation="reward:update")
        logger.info("Updated reward", reward_id=str(reward_id), fields=sorted(changes))
        return reward

    async def activate(self, reward_id: UUID) -> Reward:
        return await self.update(reward_id, active=True)

    async def deactivate(self, reward_id: UUID) -> Reward:
        return await self.update(reward_id, active=False)

    async def delete(self, reward_id: UUID) -> None:
        """Remove a reward that has no open redemptions; history keeps the title snapshot."""

        reward = await self.get(reward_id)
        open_count = await self._db.scalar(
            select(func.count(Redemption.id)).where(
                Redemption.reward_id == reward_id,
                Redemption.status.in_([RedemptionStatus.PENDING, RedemptionStatus.APPROVED]),
            )
        )
        if open_count:
            raise RewardInUseError(
                "Reward has pending or approved redemptions",
                reward_id=str(reward_id),
                open_redemptions=int(open_count),
            )
        await self._db.execute(
            update(Redemption.__table__)
            .where(Redemption.__table__.c.reward_id == reward_id)
            .values(reward_id=None)
        )
        await self._db.delete(reward)
        await flush_or_raise(self._db, operation="reward:delete")
        logger.info("Deleted reward", reward_id=str(reward_id))

    async def decrement_stock(self, reward_id: UUID) -> bool:
        """Take one unit of stock if any is left; unlimited rewards always succeed.

        A single conditional UPDATE serializes concurrent redeemers on the row.
        ``NULL - 1`` stays ``NULL`` so unlimited stock passes through untouched.
        """

        stmt = (
            update(_rewards)
            .where(_rewards.c.id == reward_id, or_(_rewards.c.stock.is_(None), _rewards.c.stock > 0))
            .values(stock=_rewards.c.stock - 1)
            .returning(_rewards.c.stock)
        )
        row = (await self._db.execute(stmt)).first()
        if row is None:
            logger.info("Stock decrement refused", reward_id=str(reward_id))
            return False
        await self._sync(reward_id, stock=row.stock)
        return True

    async def restore_stock(self, reward_id: UUID) -> bool:
        """Give back a unit taken by ``decrement_stock``; only used by compensations."""

        stmt = (
            update(_rewards)
            .where(_rewards.c.id == reward_id, _rewards.c.stock.is_not(None))
            .values(stock=_rewards.c.stock + 1)
            .returning(_rewards.c.stock)
        )
        row = (await self._db.execute(stmt)).first()
        if row is None:
            return False
        await self._sync(reward_id, stock=row.stock)
        return True

    async def adjust_redeemed_count(self, reward_id: UUID, delta: int) -> None:
        stmt = (
            update(_rewards)
            .where(_rewards.c.id == reward_id)
            .values(
                total_redeemed=case(
                    (_rewards.c.total_redeemed + delta < 0, 0),
                    else_=_rewards.c.total_redeemed + delta,
                )
            )
            .returning(_rewards.c.total_redeemed)
        )
        row = (await self._db.execute(stmt)).first()
        if row is not None:
            await self._sync(reward_id, total_redeemed=row.total_redeemed)

    def availability(self, reward: Reward, *, now: datetime | None = None) -> RewardAvailability:
        reference = now or utcnow()
        if not reward.active:
            return RewardAvailability(status="unavailable", remaining=reward.stock, reason="inactive")
        expires_at = as_utc(reward.expires_at)
        if expires_at is not None and expires_at <= reference:
            return RewardAvailability(status="unavailable", remaining=reward.stock, reason="expired")
        if reward.stock is None:
            return RewardAvailability(status="available", remaining=None)
        if reward.stock <= 0:
            return RewardAvailability(status="unavailable", remaining=0, reason="out_of_stock")
        if reward.stock <= self._low_stock_threshold:
            return RewardAvailability(status="limited", remaining=reward.stock)
        return RewardAvailability(status="available", remaining=reward.stock)

    async def _sync(self, reward_id: UUID, **values: Any) -> None:
        reward = await self._db.get(Reward, reward_id)
        if reward is None:
            return
        for key, value in values.items():
            set_committed_value(reward, key, value)

    def _validate_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        cleaned = dict(fields)
        if "title" in cleaned:
            title = (cleaned["title"] or "").strip()
            if not title:
                raise LoyaltyValidationError("Reward title is required")
            cleaned["title"] = title
        if "points_cost" in cleaned:
            points_cost = cleaned["points_cost"]
            if not isinstance(points_cost, int) or isinstance(points_cost, bool) or points_cost <= 0:
                raise LoyaltyValidationError("points_cost must be a positive integer", points_cost=points_cost)
        if "category" in cleaned:
            try:
                cleaned["category"] = RewardCategory(cleaned["category"])
            except ValueError as error:
                raise LoyaltyValidationError(
                    "Unknown reward category", category=str(cleaned["category"])
                ) from error
        if "stock" in cleaned and cleaned["stock"] is not None and cleaned["stock"] < 0:
            raise LoyaltyValidationError("stock cannot be negative", stock=cleaned["stock"])
        if "terms" in cleaned:
            cleaned["terms"] = [str(item).strip() for item in cleaned["terms"] or [] if str(item).strip()]
        if "active" in cleaned:
            cleaned["active"] = bool(cleaned["active"])
        return cleaned


__all__ = ["AvailabilityStatus", "RewardAvailability", "RewardCatalog"]

"""Referral lifecycle: pending -> completed | cancelled."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import LedgerReason, Referral, ReferralStatus
from iptv_manager_api.models.user import User
from iptv_manager_api.observability.loyalty import get_loyalty_store

from .common import bounded_limit, utcnow
from .errors import (
    InvalidTransitionError,
    LoyaltyError,
    LoyaltyNotFoundError,
    ReferralValidationError,
)
from .ledger import PointsLedger
from .persistence import flush_or_raise

NO_TOP_REFERRER = "Nenhum"
REFERRAL_MILESTONES: tuple[int, ...] = (1, 5, 10)


@dataclass(frozen=True)
class ReferrerRanking:
    user_id: UUID | None
    name: str
    email: str | None
    total_referrals: int
    completed_referrals: int
    total_points: int
    conversion_rate: float
    last_referral_at: datetime | None


@dataclass(frozen=True)
class ReferralStats:
    total: int
    pending: int
    completed: int
    cancelled: int
    conversion_rate: float
    total_points_awarded: int
    top_referrer: ReferrerRanking
    referrals_this_month: int
    referrals_last_month: int
    monthly_growth: float


@dataclass(frozen=True)
class ReferralMilestone:
    target: int
    reached: bool


@dataclass(frozen=True)
class ReferralSummary:
    """Client-facing view of a user's own referral activity."""

    referral_code: str
    referral_link: str
    total: int
    pending: int
    completed: int
    cancelled: int
    points_earned: int
    milestones: list[ReferralMilestone] = field(default_factory=list)


def _conversion_rate(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(completed / total * 100, 2)


def _month_start(reference: datetime) -> datetime:
    return reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(reference: datetime) -> datetime:
    start = _month_start(reference)
    if start.month == 1:
        return start.replace(year=start.year - 1, month=12)
    return start.replace(month=start.month - 1)


class ReferralTracker:
    """Own the referral state machine and the credits it triggers."""

    def __init__(self, session: AsyncSession, *, ledger: PointsLedger | None = None) -> None:
        self._db = session
        self._ledger = ledger or PointsLedger(session)
        self._observability = get_loyalty_store()

    async def get(self, referral_id: UUID) -> Referral:
        referral = await self._db.get(Referral, referral_id)
        if referral is None:
            raise LoyaltyNotFoundError("Referral not found", referral_id=str(referral_id))
        return referral

    async def create(
        self,
        referrer_user_id: UUID,
        referred_email: str,
        reward_points: int | None = None,
    ) -> Referral:
        email = self._normalize_email(referred_email)
        points = reward_points if reward_points is not None else settings.referral_reward_points
        if points <= 0:
            raise ReferralValidationError("Referral reward must be positive", reward_points=points)

        referrer = await self._db.get(User, referrer_user_id)
        if referrer is not None and referrer.email.lower() == email:
            raise ReferralValidationError("Users cannot refer themselves")
        existing = await self._find_by_email(referrer_user_id, email)
        if existing is not None:
            raise ReferralValidationError(
                "Referral already exists for this e-mail",
                referral_id=str(existing.id),
            )

        await self._ledger.ensure_account(referrer_user_id)
        referral = Referral(
            referrer_user_id=referrer_user_id,
            referred_email=email,
            status=ReferralStatus.PENDING,
            reward_points=points,
            reward_given=False,
        )
        self._db.add(referral)
        try:
            await flush_or_raise(self._db, operation="referral:create")
        except IntegrityError as error:
            await self._db.rollback()
            raise ReferralValidationError("Referral already exists for this e-mail") from error

        self._observability.record_referral_event("created")
        logger.info(
            "Referral created",
            referral_id=str(referral.id),
            referrer_user_id=str(referrer_user_id),
            reward_points=points,
        )
        return referral

    async def create_from_code(
        self,
        referral_code: str,
        referred_email: str,
        referred_user_id: UUID | None = None,
    ) -> Referral:
        """Register an invitee who signed up with someone's referral code."""

        account = await self._ledger.get_account_by_code(referral_code)
        if account is None:
            raise ReferralValidationError("Unknown referral code", referral_code=referral_code)
        if referred_user_id is not None and referred_user_id == account.user_id:
            raise ReferralValidationError("Users cannot refer themselves")

        referral = await self._find_by_email(account.user_id, self._normalize_email(referred_email))
        if referral is None:
            referral = await self.create(account.user_id, referred_email)
        if referred_user_id is not None:
            referral = await self.attach_registration(referral.id, referred_user_id)
        return referral

    async def attach_registration(self, referral_id: UUID, referred_user_id: UUID) -> Referral:
        referral = await self.get(referral_id)
        if referral.status != ReferralStatus.PENDING:
            raise InvalidTransitionError("referral", referral.id, referral.status.value, "registered")
        if referred_user_id == referral.referrer_user_id:
            raise ReferralValidationError("Users cannot refer themselves")
        if referral.referred_user_id is not None and referral.referred_user_id != referred_user_id:
            raise ReferralValidationError(
                "Referral already attached to another user",
                referral_id=str(referral.id),
            )
        if referral.referred_user_id == referred_user_id:
            return referral

        referral.referred_user_id = referred_user_id
        await flush_or_raise(self._db, operation="referral:attach")
        self._observability.record_referral_event("registered")
        logger.info(
            "Referral registration attached",
            referral_id=str(referral.id),
            referred_user_id=str(referred_user_id),
        )
        return referral

    async def complete(self, referral_id: UUID, subscription_plan: str | None = None) -> Referral:
        """Complete a pending referral and credit the referrer in the same unit of work."""

        referral = await self.get(referral_id)
        if referral.status != ReferralStatus.PENDING:
            raise InvalidTransitionError("referral", referral.id, referral.status.value, ReferralStatus.COMPLETED.value)

        previous_plan = referral.subscription_plan
        referral.status = ReferralStatus.COMPLETED
        referral.completed_at = utcnow()
        if subscription_plan is not None:
            referral.subscription_plan = subscription_plan
        await flush_or_raise(self._db, operation="referral:complete")

        try:
            await self._ledger.credit(
                referral.referrer_user_id,
                referral.reward_points,
                LedgerReason.REFERRAL_COMPLETION,
                referral.id,
                note=f"Referral of {referral.referred_email}",
            )
        except LoyaltyError:
            if self._db.in_transaction():
                referral.status = ReferralStatus.PENDING
                referral.completed_at = None
                referral.subscription_plan = previous_plan
                await flush_or_raise(self._db, operation="referral:complete-rollback")
            self._observability.record_referral_event("completion_failed")
            raise

        referral.reward_given = True
        await flush_or_raise(self._db, operation="referral:reward")
        self._observability.record_referral_event("completed")
        logger.info(
            "Referral completed",
            referral_id=str(referral.id),
            referrer_user_id=str(referral.referrer_user_id),
            reward_points=referral.reward_points,
            subscription_plan=referral.subscription_plan,
        )
        return referral

    async def cancel(self, referral_id: UUID) -> Referral:
        referral = await self.get(referral_id)
        if referral.status != ReferralStatus.PENDING:
            raise InvalidTransitionError("referral", referral.id, referral.status.value, ReferralStatus.CANCELLED.value)
        referral.status = ReferralStatus.CANCELLED
        referral.cancelled_at = utcnow()
        await flush_or_raise(self._db, operation="referral:cancel")
        self._observability.record_referral_event("cancelled")
        logger.info("Referral cancelled", referral_id=str(referral.id))
        return referral

    async def find_pending_for_referred_user(self, referred_user_id: UUID) -> Referral | None:
        stmt = (
            select(Referral)
            .where(
                Referral.referred_user_id == referred_user_id,
                Referral.status == ReferralStatus.PENDING,
            )
            .order_by(Referral.created_at.asc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_referrals(
        self,
        *,
        status: ReferralStatus | None = None,
        search: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        referrer_user_id: UUID | None = None,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[Referral], Tuple[datetime, UUID] | None]:
        page_size = bounded_limit(limit)
        stmt = select(Referral).order_by(Referral.created_at.desc(), Referral.id.desc())
        if status is not None:
            stmt = stmt.where(Referral.status == status)
        if referrer_user_id is not None:
            stmt = stmt.where(Referral.referrer_user_id == referrer_user_id)
        if created_from is not None:
            stmt = stmt.where(Referral.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(Referral.created_at <= created_to)
        if search:
            pattern = f"%{search.strip().lower()}%"
            stmt = stmt.outerjoin(User, User.id == Referral.referrer_user_id).where(
                or_(
                    func.lower(Referral.referred_email).like(pattern),
                    func.lower(User.email).like(pattern),
                    func.lower(func.coalesce(User.display_name, "")).like(pattern),
                )
            )
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    Referral.created_at < cursor_time,
                    and_(Referral.created_at == cursor_time, Referral.id < cursor_id),
                )
            )

        result = await self._db.execute(stmt.limit(page_size + 1))
        rows = list(result.scalars().all())
        referrals = rows[:page_size]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > page_size and referrals:
            tail = referrals[-1]
            next_cursor = (tail.created_at, tail.id)
        return referrals, next_cursor

    async def stats(self, *, now: datetime | None = None) -> ReferralStats:
        reference = now or utcnow()
        counts_stmt = select(Referral.status, func.count(Referral.id)).group_by(Referral.status)
        counts: dict[ReferralStatus, int] = {status: 0 for status in ReferralStatus}
        for status, count in (await self._db.execute(counts_stmt)).all():
            counts[ReferralStatus(status)] = int(count)
        total = sum(counts.values())

        points_awarded = await self._db.scalar(
            select(func.coalesce(func.sum(Referral.reward_points), 0)).where(Referral.reward_given.is_(True))
        )

        this_month_start = _month_start(reference)
        last_month_start = _previous_month_start(reference)
        this_month = await self._db.scalar(
            select(func.count(Referral.id)).where(Referral.created_at >= this_month_start)
        )
        last_month = await self._db.scalar(
            select(func.count(Referral.id)).where(
                Referral.created_at >= last_month_start,
                Referral.created_at < this_month_start,
            )
        )
        this_month = int(this_month or 0)
        last_month = int(last_month or 0)
        if last_month:
            growth = round((this_month - last_month) / last_month * 100, 2)
        else:
            growth = 100.0 if this_month else 0.0

        leaders = await self.top_referrers(limit=1)
        top = leaders[0] if leaders and leaders[0].completed_referrals > 0 else ReferrerRanking(
            user_id=None,
            name=NO_TOP_REFERRER,
            email=None,
            total_referrals=0,
            completed_referrals=0,
            total_points=0,
            conversion_rate=0.0,
            last_referral_at=None,
        )

        return ReferralStats(
            total=total,
            pending=counts[ReferralStatus.PENDING],
            completed=counts[ReferralStatus.COMPLETED],
            cancelled=counts[ReferralStatus.CANCELLED],
            conversion_rate=_conversion_rate(counts[ReferralStatus.COMPLETED], total),
            total_points_awarded=int(points_awarded or 0),
            top_referrer=top,
            referrals_this_month=this_month,
            referrals_last_month=last_month,
            monthly_growth=growth,
        )

    async def top_referrers(self, *, limit: int = 10) -> list[ReferrerRanking]:
        completed_count = func.sum(case((Referral.status == ReferralStatus.COMPLETED, 1), else_=0))
        points_total = func.sum(case((Referral.reward_given.is_(True), Referral.reward_points), else_=0))
        stmt = (
            select(
                Referral.referrer_user_id,
                User.display_name,
                User.email,
                func.count(Referral.id).label("total"),
                completed_count.label("completed"),
                points_total.label("points"),
                func.max(Referral.created_at).label("last_referral_at"),
            )
            .outerjoin(User, User.id == Referral.referrer_user_id)
            .group_by(Referral.referrer_user_id, User.display_name, User.email)
            .order_by(completed_count.desc(), points_total.desc(), func.count(Referral.id).desc())
            .limit(bounded_limit(limit))
        )
        rankings: list[ReferrerRanking] = []
        for row in (await self._db.execute(stmt)).all():
            total = int(row.total or 0)
            completed = int(row.completed or 0)
            rankings.append(
                ReferrerRanking(
                    user_id=row.referrer_user_id,
                    name=row.display_name or (row.email or "").split("@", 1)[0],
                    email=row.email,
                    total_referrals=total,
                    completed_referrals=completed,
                    total_points=int(row.points or 0),
                    conversion_rate=_conversion_rate(completed, total),
                    last_referral_at=row.last_referral_at,
                )
            )
        return rankings

    async def summary_for(self, user_id: UUID) -> ReferralSummary:
        account = await self._ledger.ensure_account(user_id)
        earned = func.sum(case((Referral.reward_given.is_(True), Referral.reward_points), else_=0))
        stmt = (
            select(Referral.status, func.count(Referral.id), func.coalesce(earned, 0))
            .where(Referral.referrer_user_id == user_id)
            .group_by(Referral.status)
        )
        counts: dict[ReferralStatus, int] = {status: 0 for status in ReferralStatus}
        points_earned = 0
        for status, count, points in (await self._db.execute(stmt)).all():
            counts[ReferralStatus(status)] = int(count)
            points_earned += int(points or 0)

        completed = counts[ReferralStatus.COMPLETED]
        base_url = settings.frontend_url.rstrip("/")
        return ReferralSummary(
            referral_code=account.referral_code or "",
            referral_link=f"{base_url}/register?ref={account.referral_code}",
            total=sum(counts.values()),
            pending=counts[ReferralStatus.PENDING],
            completed=completed,
            cancelled=counts[ReferralStatus.CANCELLED],
            points_earned=points_earned,
            milestones=[ReferralMilestone(target=target, reached=completed >= target) for target in REFERRAL_MILESTONES],
        )

    async def _find_by_email(self, referrer_user_id: UUID, email: str) -> Referral | None:
        stmt = select(Referral).where(
            Referral.referrer_user_id == referrer_user_id,
            Referral.referred_email == email,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _normalize_email(value: str) -> str:
        email = (value or "").strip().lower()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ReferralValidationError("A valid referred e-mail is required", referred_email=value)
        return email


__all__ = [
    "NO_TOP_REFERRER",
    "REFERRAL_MILESTONES",
    "ReferralMilestone",
    "ReferralStats",
    "ReferralSummary",
    "ReferralTracker",
    "ReferrerRanking",
]

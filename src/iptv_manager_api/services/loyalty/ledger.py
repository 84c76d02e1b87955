"""Points ledger: the single writer of point balance changes."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.core.settings import settings
from iptv_manager_api.models.loyalty import LedgerEntry, LedgerEntryType, LedgerReason, PointsAccount
from iptv_manager_api.models.user import User
from iptv_manager_api.observability.loyalty import get_loyalty_store

from .common import bounded_limit, utcnow
from .errors import (
    DuplicateCreditError,
    InsufficientPointsError,
    LoyaltyValidationError,
    StorageError,
)
from .persistence import flush_or_raise

_CODE_ALPHABET = string.ascii_uppercase + string.digits

_CREDIT_TYPES = {
    LedgerReason.REFERRAL_COMPLETION: LedgerEntryType.EARNED,
    LedgerReason.SUBSCRIPTION_RENEWAL: LedgerEntryType.EARNED,
    LedgerReason.REDEMPTION_REVERSAL: LedgerEntryType.ADJUSTMENT,
    LedgerReason.MANUAL_ADJUSTMENT: LedgerEntryType.ADJUSTMENT,
}

_DEBIT_TYPES = {
    LedgerReason.REDEMPTION: LedgerEntryType.SPENT,
    LedgerReason.MANUAL_ADJUSTMENT: LedgerEntryType.ADJUSTMENT,
}


@dataclass(frozen=True)
class AccountBalance:
    current_points: int
    lifetime_earned: int


class PointsLedger:
    """Append ledger entries and keep the owning account totals in step.

    Account rows are re-read with ``FOR UPDATE`` before every mutation and the
    version column rejects concurrent writers, so credits and debits for the
    same user are serialized. Methods flush but never commit; the caller owns
    the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session
        self._observability = get_loyalty_store()

    async def get_account(self, user_id: UUID) -> PointsAccount | None:
        stmt = select(PointsAccount).where(PointsAccount.user_id == user_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_account_by_code(self, referral_code: str) -> PointsAccount | None:
        stmt = select(PointsAccount).where(PointsAccount.referral_code == referral_code.strip().upper())
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_account(self, user_id: UUID) -> PointsAccount:
        """Fetch or create the points account for a user."""

        account = await self.get_account(user_id)
        if account:
            return account

        account = PointsAccount(
            user_id=user_id,
            current_points=0,
            lifetime_earned=0,
            referral_code=await self._generate_unique_referral_code(user_id),
        )
        self._db.add(account)
        try:
            await self._db.flush()
            logger.info("Created points account", user_id=str(user_id), account_id=str(account.id))
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when creating points account", user_id=str(user_id))
            return await self.ensure_account(user_id)
        return account

    async def credit(
        self,
        user_id: UUID,
        points: int,
        reason: LedgerReason,
        reference_id: UUID | None = None,
        *,
        entry_type: LedgerEntryType | None = None,
        note: str | None = None,
    ) -> LedgerEntry:
        """Add points; rejects a second credit for the same (reason, reference)."""

        if points <= 0:
            raise LoyaltyValidationError("Credit points must be positive", points=points)
        resolved_type = entry_type or _CREDIT_TYPES.get(reason, LedgerEntryType.EARNED)
        if resolved_type == LedgerEntryType.SPENT:
            raise LoyaltyValidationError("Credits cannot be recorded as spent entries")
        await self._guard_duplicate(reason, reference_id)

        account = await self._lock_account(user_id)
        account.current_points += points
        account.lifetime_earned += points
        entry = self._build_entry(account, resolved_type, points, reason, reference_id, note)
        await self._flush_entry(entry, reason=reason, reference_id=reference_id)

        self._observability.record_ledger_event("credit", points)
        logger.info(
            "Recorded points credit",
            user_id=str(user_id),
            points=points,
            reason=reason.value,
            reference_id=str(reference_id) if reference_id else None,
            balance=account.current_points,
        )
        return entry

    async def debit(
        self,
        user_id: UUID,
        points: int,
        reason: LedgerReason,
        reference_id: UUID | None = None,
        *,
        entry_type: LedgerEntryType | None = None,
        note: str | None = None,
    ) -> LedgerEntry:
        """Spend points; lifetime totals are untouched."""

        if points <= 0:
            raise LoyaltyValidationError("Debit points must be positive", points=points)
        resolved_type = entry_type or _DEBIT_TYPES.get(reason, LedgerEntryType.SPENT)
        if resolved_type in (LedgerEntryType.EARNED, LedgerEntryType.BONUS):
            raise LoyaltyValidationError("Debits must be spent or adjustment entries")
        await self._guard_duplicate(reason, reference_id)

        account = await self._lock_account(user_id)
        if account.current_points < points:
            self._observability.record_ledger_event("insufficient_points")
            raise InsufficientPointsError(required=points, available=account.current_points)
        account.current_points -= points
        entry = self._build_entry(account, resolved_type, -points, reason, reference_id, note)
        await self._flush_entry(entry, reason=reason, reference_id=reference_id)

        self._observability.record_ledger_event("debit", points)
        logger.info(
            "Recorded points debit",
            user_id=str(user_id),
            points=points,
            reason=reason.value,
            reference_id=str(reference_id) if reference_id else None,
            balance=account.current_points,
        )
        return entry

    async def adjust(
        self,
        user_id: UUID,
        points: int,
        *,
        note: str | None = None,
        reference_id: UUID | None = None,
    ) -> LedgerEntry:
        """Administrative correction; the sign of ``points`` picks credit or debit."""

        if points == 0:
            raise LoyaltyValidationError("Adjustment must change the balance")
        if points > 0:
            return await self.credit(
                user_id,
                points,
                LedgerReason.MANUAL_ADJUSTMENT,
                reference_id,
                entry_type=LedgerEntryType.ADJUSTMENT,
                note=note,
            )
        return await self.debit(
            user_id,
            -points,
            LedgerReason.MANUAL_ADJUSTMENT,
            reference_id,
            entry_type=LedgerEntryType.ADJUSTMENT,
            note=note,
        )

    async def balance(self, user_id: UUID) -> AccountBalance:
        account = await self.get_account(user_id)
        if account is None:
            return AccountBalance(current_points=0, lifetime_earned=0)
        return AccountBalance(current_points=account.current_points, lifetime_earned=account.lifetime_earned)

    async def projected_balance(self, user_id: UUID) -> AccountBalance:
        """Recompute the totals from the entries themselves (reconciliation view)."""

        stmt = select(
            func.coalesce(func.sum(LedgerEntry.points), 0),
            func.coalesce(func.sum(case((LedgerEntry.points > 0, LedgerEntry.points), else_=0)), 0),
        ).where(LedgerEntry.user_id == user_id)
        result = await self._db.execute(stmt)
        current, lifetime = result.one()
        return AccountBalance(current_points=int(current), lifetime_earned=int(lifetime))

    async def history(
        self,
        user_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        entry_types: Sequence[LedgerEntryType] | None = None,
    ) -> tuple[list[LedgerEntry], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of ledger entries for a user."""

        page_size = bounded_limit(limit)
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        )
        if entry_types:
            stmt = stmt.where(LedgerEntry.entry_type.in_(list(entry_types)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    LedgerEntry.created_at < cursor_time,
                    and_(LedgerEntry.created_at == cursor_time, LedgerEntry.id < cursor_id),
                )
            )

        result = await self._db.execute(stmt.limit(page_size + 1))
        rows = list(result.scalars().all())
        entries = rows[:page_size]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > page_size and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)
        return entries, next_cursor

    async def points_this_month(self, user_id: UUID, *, now: datetime | None = None) -> int:
        reference = now or utcnow()
        month_start = reference.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        stmt = select(func.coalesce(func.sum(LedgerEntry.points), 0)).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.points > 0,
            LedgerEntry.created_at >= month_start,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def find_entry(self, reason: LedgerReason, reference_id: UUID) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(LedgerEntry.reason == reason, LedgerEntry.reference_id == reference_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _guard_duplicate(self, reason: LedgerReason, reference_id: UUID | None) -> None:
        if reference_id is None:
            return
        existing = await self.find_entry(reason, reference_id)
        if existing is not None:
            self._observability.record_ledger_event("duplicate")
            raise DuplicateCreditError(
                f"Ledger entry for {reason.value} {reference_id} already recorded",
                reason=reason.value,
                reference_id=str(reference_id),
                entry_id=str(existing.id),
            )

    async def _lock_account(self, user_id: UUID) -> PointsAccount:
        stmt = (
            select(PointsAccount)
            .where(PointsAccount.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        account = result.scalar_one_or_none()
        if account is None:
            account = await self.ensure_account(user_id)
        return account

    def _build_entry(
        self,
        account: PointsAccount,
        entry_type: LedgerEntryType,
        points: int,
        reason: LedgerReason,
        reference_id: UUID | None,
        note: str | None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            account_id=account.id,
            user_id=account.user_id,
            entry_type=entry_type,
            points=points,
            reason=reason,
            reference_id=reference_id,
            note=note,
        )
        self._db.add(entry)
        return entry

    async def _flush_entry(self, entry: LedgerEntry, *, reason: LedgerReason, reference_id: UUID | None) -> None:
        try:
            await flush_or_raise(self._db, operation=f"ledger:{reason.value}")
        except IntegrityError as error:
            await self._db.rollback()
            if reference_id is None:
                raise StorageError("Ledger write rejected by storage", reason=reason.value) from error
            self._observability.record_ledger_event("duplicate")
            logger.warning(
                "Detected race on ledger idempotency key",
                reason=reason.value,
                reference_id=str(reference_id),
            )
            raise DuplicateCreditError(
                f"Ledger entry for {reason.value} {reference_id} already recorded",
                reason=reason.value,
                reference_id=str(reference_id),
            ) from error

    async def _generate_unique_referral_code(self, user_id: UUID) -> str:
        user = await self._db.get(User, user_id)
        source = ""
        if user is not None:
            source = user.display_name or user.email.split("@", 1)[0]
        letters = "".join(char for char in source.upper() if char.isalpha())
        prefix = (letters + "IPTV")[: settings.referral_code_prefix_length]

        for _ in range(10):
            suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(settings.referral_code_random_length))
            candidate = f"{prefix}{suffix}"
            exists = await self._db.execute(
                select(PointsAccount.id).where(PointsAccount.referral_code == candidate)
            )
            if exists.scalar_one_or_none() is None:
                return candidate
        raise StorageError("Unable to allocate a unique referral code", user_id=str(user_id))


__all__ = ["AccountBalance", "PointsLedger"]

"""Loyalty engine models: points accounts, ledger, referrals and rewards."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from iptv_manager_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class LedgerEntryType(str, Enum):
    """Kinds of point movements recorded in the ledger."""

    EARNED = "earned"
    SPENT = "spent"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


class LedgerReason(str, Enum):
    """Business event that caused a ledger movement."""

    REFERRAL_COMPLETION = "referral-completion"
    REDEMPTION = "redemption"
    REDEMPTION_REVERSAL = "redemption-reversal"
    MANUAL_ADJUSTMENT = "manual-adjustment"
    SUBSCRIPTION_RENEWAL = "subscription-renewal"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RewardCategory(str, Enum):
    DISCOUNT = "discount"
    PRODUCT = "product"
    SERVICE = "service"
    PREMIUM = "premium"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    USED = "used"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PointsAccount(Base):
    """Running totals for a user's points, maintained by the ledger only."""

    __tablename__ = "points_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_points_accounts_user_id"),
        CheckConstraint("current_points >= 0", name="ck_points_accounts_non_negative"),
        CheckConstraint("current_points <= lifetime_earned", name="ck_points_accounts_within_lifetime"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    current_points = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    referral_code = Column(String(32), nullable=True, unique=True)
    version = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    entries = relationship("LedgerEntry", back_populates="account", order_by="LedgerEntry.created_at")


class LedgerEntry(Base):
    """Immutable record of a single point-balance change."""

    __tablename__ = "loyalty_ledger_entries"
    __table_args__ = (
        UniqueConstraint("reason", "reference_id", name="uq_loyalty_ledger_reason_reference"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("points_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_type = Column(
        "type",
        SqlEnum(LedgerEntryType, name="loyalty_ledger_entry_type", values_callable=_enum_values),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    reason = Column(
        SqlEnum(LedgerReason, name="loyalty_ledger_reason", values_callable=_enum_values),
        nullable=False,
    )
    reference_id = Column(UUID(as_uuid=True), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False, index=True)

    account = relationship("PointsAccount", back_populates="entries")


class Referral(Base):
    """Invitation from a user to a prospective subscriber."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referrer_user_id", "referred_email", name="uq_referrals_referrer_email"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    referred_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    referred_email = Column(String, nullable=False)
    status = Column(
        SqlEnum(ReferralStatus, name="referral_status", values_callable=_enum_values),
        nullable=False,
        default=ReferralStatus.PENDING,
        server_default=ReferralStatus.PENDING.value,
    )
    reward_points = Column(Integer, nullable=False)
    reward_given = Column(Boolean, nullable=False, default=False, server_default="false")
    subscription_plan = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}


class Reward(Base):
    """Catalog item redeemable for points."""

    __tablename__ = "rewards"
    __table_args__ = (
        CheckConstraint("points_cost > 0", name="ck_rewards_points_cost_positive"),
        CheckConstraint("stock IS NULL OR stock >= 0", name="ck_rewards_stock_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    points_cost = Column(Integer, nullable=False)
    category = Column(
        SqlEnum(RewardCategory, name="reward_category", values_callable=_enum_values),
        nullable=False,
    )
    value = Column(String, nullable=True)
    stock = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True, server_default="true")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    terms = Column(JSON, nullable=False, default=list)
    total_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        server_default=func.now(),
        nullable=False,
    )

    redemptions = relationship("Redemption", back_populates="reward", passive_deletes=True)


class Redemption(Base):
    """A user's claim against a reward."""

    __tablename__ = "reward_redemptions"
    __table_args__ = (
        UniqueConstraint("code", name="uq_reward_redemptions_code"),
        UniqueConstraint("user_id", "request_id", name="uq_reward_redemptions_user_request"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="SET NULL"), nullable=True, index=True)
    reward_title = Column(String, nullable=False)
    points_spent = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(RedemptionStatus, name="reward_redemption_status", values_callable=_enum_values),
        nullable=False,
        default=RedemptionStatus.PENDING,
        server_default=RedemptionStatus.PENDING.value,
    )
    code = Column(String(32), nullable=False)
    request_id = Column(String(64), nullable=True)
    stock_reserved = Column(Boolean, nullable=False, default=False, server_default="false")
    version = Column(Integer, nullable=False, default=1, server_default="1")
    redeemed_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    __mapper_args__ = {"version_id_col": version}

    reward = relationship("Reward", back_populates="redemptions")


__all__ = [
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerReason",
    "PointsAccount",
    "Redemption",
    "RedemptionStatus",
    "Referral",
    "ReferralStatus",
    "Reward",
    "RewardCategory",
]

"""SQLAlchemy models package."""

from iptv_manager_api.db.base import Base  # noqa: F401

from .loyalty import (  # noqa: F401
    LedgerEntry,
    LedgerEntryType,
    LedgerReason,
    PointsAccount,
    Redemption,
    RedemptionStatus,
    Referral,
    ReferralStatus,
    Reward,
    RewardCategory,
)
from .user import User, UserRoleEnum  # noqa: F401

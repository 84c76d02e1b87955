"""Loyalty service exports."""

from .approvals import (  # noqa: F401
    AdminApprovalGateway,
    ApprovalAction,
    ApprovalRequest,
    ApprovalTarget,
)
from .catalog import RewardAvailability, RewardCatalog  # noqa: F401
from .common import decode_time_uuid_cursor, encode_time_uuid_cursor  # noqa: F401
from .errors import (  # noqa: F401
    ApprovalForbiddenError,
    CompensationError,
    DuplicateCreditError,
    InsufficientPointsError,
    InvalidTransitionError,
    LoyaltyError,
    LoyaltyNotFoundError,
    LoyaltyValidationError,
    OutOfStockError,
    ReferralValidationError,
    RequestReplayConflictError,
    RewardInUseError,
    RewardUnavailableError,
    StorageError,
)
from .ledger import AccountBalance, PointsLedger  # noqa: F401
from .levels import DEFAULT_LEVELS, LevelThreshold, level_for, next_level_for, progress_for  # noqa: F401
from .persistence import commit_or_raise, run_with_storage_retry  # noqa: F401
from .redemptions import RedemptionService  # noqa: F401
from .referrals import ReferralStats, ReferralSummary, ReferralTracker, ReferrerRanking  # noqa: F401
from .subscriptions import SubscriptionActivation, SubscriptionActivationHandler  # noqa: F401

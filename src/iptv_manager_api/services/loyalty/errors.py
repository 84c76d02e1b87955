"""Error taxonomy for the loyalty engine.

Every error carries the HTTP status and machine-readable code used when the
API boundary turns it into a structured response. ``extra`` holds any
additional fields the client needs (for example the shortfall on an
insufficient balance).
"""

from __future__ import annotations

from typing import Any


class LoyaltyError(Exception):
    """Base class for loyalty engine failures."""

    status_code: int = 400
    code: str = "loyalty_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


class LoyaltyNotFoundError(LoyaltyError):
    status_code = 404
    code = "not_found"


class LoyaltyValidationError(LoyaltyError):
    status_code = 422
    code = "validation_error"


class ReferralValidationError(LoyaltyValidationError):
    code = "invalid_referral"


class InvalidTransitionError(LoyaltyError):
    """State machine transition attempted from a non-source state."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity: str, entity_id: Any, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move {entity} from {current} to {target}",
            entity=entity,
            entity_id=str(entity_id),
            current_status=current,
            target_status=target,
        )


class InsufficientPointsError(LoyaltyError):
    status_code = 400
    code = "insufficient_points"

    def __init__(self, *, required: int, available: int) -> None:
        shortfall = required - available
        super().__init__(
            f"Insufficient points: {shortfall} more needed",
            required=required,
            available=available,
            shortfall=shortfall,
        )
        self.required = required
        self.available = available
        self.shortfall = shortfall


class RewardUnavailableError(LoyaltyError):
    """Reward cannot be redeemed right now (inactive, expired or sold out)."""

    status_code = 409
    code = "reward_unavailable"


class OutOfStockError(RewardUnavailableError):
    code = "out_of_stock"


class RewardInUseError(LoyaltyError):
    status_code = 409
    code = "reward_in_use"


class DuplicateCreditError(LoyaltyError):
    """A credit for the same (reason, reference) pair already landed."""

    status_code = 409
    code = "duplicate_credit"


class RequestReplayConflictError(LoyaltyError):
    """An idempotency key was reused for a different request."""

    status_code = 409
    code = "request_replay_conflict"


class StorageError(LoyaltyError):
    """Transient persistence failure; the whole operation may be retried."""

    status_code = 503
    code = "storage_unavailable"


class CompensationError(LoyaltyError):
    """A compensating reversal could not be applied; needs manual reconciliation."""

    status_code = 500
    code = "compensation_failed"


class ApprovalForbiddenError(LoyaltyError):
    status_code = 403
    code = "forbidden"


__all__ = [
    "ApprovalForbiddenError",
    "CompensationError",
    "DuplicateCreditError",
    "InsufficientPointsError",
    "InvalidTransitionError",
    "LoyaltyError",
    "LoyaltyNotFoundError",
    "LoyaltyValidationError",
    "OutOfStockError",
    "ReferralValidationError",
    "RequestReplayConflictError",
    "RewardInUseError",
    "RewardUnavailableError",
    "StorageError",
]

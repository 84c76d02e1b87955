from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    referrals: Dict[str, int]
    redemptions: Dict[str, int]
    approvals: Dict[str, int]
    compensation_failures: List[Dict[str, Any]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "referrals": dict(self.referrals),
            "redemptions": dict(self.redemptions),
            "approvals": dict(self.approvals),
            "compensation_failures": [dict(item) for item in self.compensation_failures],
        }


class LoyaltyObservabilityStore:
    """Collect loyalty engine telemetry for dashboards and alerting."""

    _MAX_COMPENSATION_FAILURES = 50

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._approvals: Dict[str, int] = defaultdict(int)
        self._compensation_failures: List[Dict[str, Any]] = []

    def record_ledger_event(self, event: str, points: int = 0) -> None:
        with self._lock:
            self._ledger[event] += 1
            if points:
                self._ledger[f"{event}_points"] += abs(points)

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_redemption_event(self, event: str) -> None:
        with self._lock:
            self._redemptions[event] += 1

    def record_approval(self, target: str, action: str) -> None:
        with self._lock:
            self._approvals["total"] += 1
            self._approvals[f"{target}:{action}"] += 1

    def record_compensation_failure(self, redemption_id: str, reason: str) -> None:
        with self._lock:
            self._compensation_failures.append(
                {
                    "redemption_id": redemption_id,
                    "reason": reason,
                    "recorded_at": datetime.now(timezone.utc).isoformat(),
                }
            )
            del self._compensation_failures[: -self._MAX_COMPENSATION_FAILURES]

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                ledger=dict(self._ledger),
                referrals=dict(self._referrals),
                redemptions=dict(self._redemptions),
                approvals=dict(self._approvals),
                compensation_failures=list(self._compensation_failures),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._referrals.clear()
            self._redemptions.clear()
            self._approvals.clear()
            self._compensation_failures.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]

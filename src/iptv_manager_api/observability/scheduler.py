"""Observability store for loyalty job scheduler metrics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class SchedulerJobState:
    """Mutable per-job counters; copied out through ``as_dict``."""

    job_id: str
    task: str
    runs: int = 0
    success: int = 0
    run_failures: int = 0
    attempt_failures: int = 0
    retries: int = 0
    consecutive_failures: int = 0
    total_runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_retry_delay_seconds: float | None = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": {
                "runs": self.runs,
                "success": self.success,
                "run_failures": self.run_failures,
                "attempt_failures": self.attempt_failures,
                "retries": self.retries,
                "consecutive_failures": self.consecutive_failures,
            },
            "timings": {"total_runtime_seconds": self.total_runtime_seconds},
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_retry_delay_seconds": self.last_retry_delay_seconds,
        }


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, SchedulerJobState] = field(default_factory=dict)

    def failing_jobs(self) -> List[str]:
        return sorted(job_id for job_id, job in self.jobs.items() if job.consecutive_failures > 0)

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": dict(self.totals),
            "failing_jobs": self.failing_jobs(),
            "jobs": {job_id: job.as_dict() for job_id, job in self.jobs.items()},
        }


class SchedulerObservabilityStore:
    """Tracks scheduler dispatch, retry and failure metrics."""

    # meta: observability: loyalty-scheduler

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, SchedulerJobState] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _state(self, job_id: str, task: str) -> SchedulerJobState:
        state = self._jobs.setdefault(job_id, SchedulerJobState(job_id=job_id, task=task))
        state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.runs += 1
            state.last_started_at = _utcnow()
            state.last_attempts = 0
            state.last_retry_delay_seconds = None

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.attempt_failures += 1
            state.consecutive_failures += 1
            state.last_error = error
            state.last_error_at = _utcnow()
            state.last_attempts = attempts

    def record_retry(self, job_id: str, task: str, *, delay_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.retries += 1
            state.last_retry_delay_seconds = delay_seconds
            state.last_attempts = attempts

    def record_success(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.success += 1
            state.total_runtime_seconds += runtime_seconds
            state.last_success_at = _utcnow()
            state.last_attempts = attempts
            state.consecutive_failures = 0
            state.last_error = None
            state.last_error_at = None

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.run_failures += 1
            state.total_runtime_seconds += runtime_seconds
            state.last_error = error
            state.last_error_at = _utcnow()
            state.last_attempts = attempts

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: SchedulerJobState(**vars(state)) for job_id, state in self._jobs.items()}
        totals = {
            key: sum(getattr(state, key) for state in jobs.values())
            for key in ("runs", "success", "run_failures", "attempt_failures", "retries")
        }
        return SchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = ["SchedulerObservabilityStore", "SchedulerSnapshot", "get_scheduler_store"]

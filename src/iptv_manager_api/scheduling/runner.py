"""Scheduler runtime for recurring loyalty jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from iptv_manager_api.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(task_path: str) -> JobCallable:
    """Import ``package.module.function`` and ensure it is a coroutine function."""

    module_name, _, attr = task_path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task_path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task_path} not found")
    if not asyncio.iscoroutinefunction(func):
        raise TypeError(f"Task {task_path} must be an async function")
    return func


def backoff_delay(job: JobDefinition, attempt: int) -> float:
    delay = max(job.base_backoff_seconds, 0.0) * (max(job.backoff_multiplier, 1.0) ** (attempt - 1))
    if job.max_backoff_seconds:
        delay = min(delay, job.max_backoff_seconds)
    if job.jitter_seconds:
        delay += random.uniform(0, job.jitter_seconds)
    return max(delay, 0.0)


class LoyaltyJobScheduler:
    """Register and run recurring loyalty maintenance jobs (redemption expiry)."""

    # meta: scheduler: loyalty-maintenance

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running: bool = False
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            func = resolve_task(job.task)
            scheduler.add_job(
                self._bind(func, job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered loyalty job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Loyalty job scheduler started", jobs=len(config.jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        logger.info("Loyalty job scheduler stopped")

    async def run(self, job: JobDefinition, func: JobCallable | None = None) -> Any:
        """Dispatch one job with bounded retries; returns the job summary or ``None`` on failure."""

        func = func or resolve_task(job.task)
        max_attempts = max(job.max_attempts, 1)
        self._observability.record_dispatch(job.id, job.task)
        started_at = time.perf_counter()

        for attempt in range(1, max_attempts + 1):
            try:
                outcome = await func(session_factory=self._session_factory, **job.kwargs)
            except Exception as exc:  # noqa: BLE001
                error_message = str(exc) or exc.__class__.__name__
                self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error_message)
                if attempt >= max_attempts:
                    self._observability.record_run_failure(
                        job.id,
                        job.task,
                        runtime_seconds=time.perf_counter() - started_at,
                        attempts=attempt,
                        error=error_message,
                    )
                    logger.exception(
                        "Scheduled job failed after retries",
                        job_id=job.id,
                        task=job.task,
                        attempts=attempt,
                        error=error_message,
                    )
                    return None
                delay = backoff_delay(job, attempt)
                self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                logger.warning(
                    "Scheduled job retrying",
                    job_id=job.id,
                    task=job.task,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                )
                if delay:
                    await self._sleep(delay)
                continue

            runtime_seconds = time.perf_counter() - started_at
            self._observability.record_success(job.id, job.task, runtime_seconds=runtime_seconds, attempts=attempt)
            logger.info(
                "Scheduled job completed",
                job_id=job.id,
                task=job.task,
                attempts=attempt,
                runtime_seconds=runtime_seconds,
            )
            return outcome
        return None

    def _bind(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        async def _runner() -> Any:
            return await self.run(job, func)

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs: list[dict[str, object]] = []
        for job in self._config.jobs if self._config else []:
            metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.max_attempts,
                    "metrics": metrics.as_dict() if metrics else None,
                }
            )
        return {
            "running": self._is_running,
            "configured_jobs": len(jobs),
            "failing_jobs": snapshot.failing_jobs(),
            "totals": snapshot.totals,
            "jobs": jobs,
        }


__all__ = ["LoyaltyJobScheduler", "backoff_delay", "resolve_task"]

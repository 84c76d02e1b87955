"""Flush translation and bounded retries for transient storage failures."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from iptv_manager_api.core.settings import settings

from .errors import StorageError

T = TypeVar("T")


async def flush_or_raise(session: AsyncSession, *, operation: str) -> None:
    """Flush pending changes, turning lost races and driver faults into ``StorageError``.

    Integrity violations are re-raised untouched so callers can map them to
    domain errors (duplicate credits, duplicate referrals).
    """

    try:
        await session.flush()
    except IntegrityError:
        raise
    except StaleDataError as error:
        await session.rollback()
        logger.warning("Concurrent update detected", operation=operation, error=str(error))
        raise StorageError(f"Concurrent update while running {operation}", operation=operation) from error
    except DBAPIError as error:
        await session.rollback()
        logger.warning("Storage failure during flush", operation=operation, error=str(error))
        raise StorageError(f"Storage failure while running {operation}", operation=operation) from error


async def commit_or_raise(session: AsyncSession, *, operation: str) -> None:
    """Commit the unit of work; a failed commit is reported as a retryable ``StorageError``."""

    try:
        await session.commit()
    except (StaleDataError, DBAPIError) as error:
        await session.rollback()
        logger.warning("Storage failure during commit", operation=operation, error=str(error))
        raise StorageError(f"Storage failure while committing {operation}", operation=operation) from error


async def run_with_storage_retry(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int | None = None,
    base_backoff_seconds: float | None = None,
    max_backoff_seconds: float | None = None,
    backoff_multiplier: float = 2.0,
    jitter_seconds: float = 0.0,
) -> T:
    """Run an idempotent unit of work, retrying on ``StorageError`` with backoff.

    The session is rolled back before each retry so the operation starts from
    committed state. Only pass operations keyed by a reference or request id.
    """

    max_attempts = max(attempts if attempts is not None else settings.storage_retry_attempts, 1)
    base_backoff = max(
        base_backoff_seconds if base_backoff_seconds is not None else settings.storage_retry_base_backoff_seconds,
        0.0,
    )
    max_backoff = max(
        max_backoff_seconds if max_backoff_seconds is not None else settings.storage_retry_max_backoff_seconds,
        0.0,
    )

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except StorageError as error:
            if attempt >= max_attempts:
                logger.error("Storage retries exhausted", operation=name, attempts=attempt, error=error.message)
                raise
            await session.rollback()
            delay = base_backoff * (max(backoff_multiplier, 1.0) ** (attempt - 1))
            if max_backoff:
                delay = min(delay, max_backoff)
            if jitter_seconds:
                delay += random.uniform(0, jitter_seconds)
            logger.warning(
                "Retrying loyalty operation after storage failure",
                operation=name,
                attempt=attempt + 1,
                delay_seconds=delay,
            )
            if delay:
                await asyncio.sleep(delay)

    raise StorageError(f"Storage retries exhausted for {name}", operation=name)  # pragma: no cover


__all__ = ["commit_or_raise", "flush_or_raise", "run_with_storage_retry"]

"""Periodic sweep expiring redemptions past their deadline."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.observability.tracing import loyalty_span
from iptv_manager_api.services.loyalty import (
    CompensationError,
    InvalidTransitionError,
    RedemptionService,
    StorageError,
    commit_or_raise,
)


# meta: job: loyalty-redemption-expiry

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    return maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session


async def expire_redemptions(
    *,
    session_factory: SessionFactory,
    limit: int = 500,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Expire open redemptions past ``expires_at``, one transaction per redemption.

    Each expiry restores the user's points and the reward's stock. A
    compensation failure rolls back only that redemption; it has already been
    logged at critical level and is counted in the summary. Storage failures
    abort the sweep so the scheduler can retry it.
    """

    async with await _open_session(session_factory) as session:
        due = await RedemptionService(session).due_for_expiry(now=now, limit=limit)

    with loyalty_span("loyalty.redemption_expiry_sweep", due=len(due)) as span:
        summary = await _expire_each(session_factory, due)
        span.set_attribute("loyalty.expired", summary["expired"])
        span.set_attribute("loyalty.failed", summary["failed"])

    logger.bind(summary=summary).info("Redemption expiry sweep completed")
    return summary


async def _expire_each(session_factory: SessionFactory, due: list[UUID]) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"due": len(due), "expired": 0, "skipped": 0, "failed": 0, "failed_ids": []}
    for redemption_id in due:
        async with await _open_session(session_factory) as session:
            try:
                await RedemptionService(session).expire(redemption_id)
                await commit_or_raise(session, operation="redemption:expire")
            except InvalidTransitionError:
                await session.rollback()
                summary["skipped"] += 1
                continue
            except CompensationError:
                await session.rollback()
                summary["failed"] += 1
                summary["failed_ids"].append(str(redemption_id))
                continue
            except StorageError:
                await session.rollback()
                logger.warning("Redemption expiry sweep aborted", redemption_id=str(redemption_id))
                raise
        summary["expired"] += 1
    return summary


__all__ = ["expire_redemptions"]

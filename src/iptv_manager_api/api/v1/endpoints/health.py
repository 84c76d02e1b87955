from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from iptv_manager_api.core.settings import settings
from iptv_manager_api.db.session import get_session
from iptv_manager_api.observability.scheduler import get_scheduler_store


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/health/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    database_status = await _evaluate_database_component(session)
    components["database"] = database_status
    if database_status.status == "error":
        status = "error"

    scheduler = getattr(request.app.state, "loyalty_job_scheduler", None)
    if settings.loyalty_job_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        detail = None if running else "Loyalty scheduler not running"
        scheduler_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        snapshot = get_scheduler_store().snapshot()
        failing_jobs = snapshot.failing_jobs()
        last_error_at: str | None = None
        if failing_jobs:
            scheduler_status = "error"
            detail = f"Jobs failing: {', '.join(failing_jobs)}"
            status = "error"
            last_errors = [snapshot.jobs[job_id].last_error_at for job_id in failing_jobs]
            latest = max((value for value in last_errors if value is not None), default=None)
            last_error_at = latest.isoformat() if latest else None
        elif not running:
            status = "degraded" if status != "error" else status
        components["loyalty_scheduler"] = ComponentStatus(
            status=scheduler_status,
            detail=detail,
            last_error_at=last_error_at,
        )
    else:
        components["loyalty_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Loyalty scheduler disabled via settings (redemptions will not expire automatically)",
        )

    return ReadinessPayload(status=status, components=components)


async def _evaluate_database_component(session: AsyncSession) -> ComponentStatus:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as error:
        logger.warning("Readiness database probe failed", error=str(error))
        return ComponentStatus(status="error", detail=f"Database unreachable ({error.__class__.__name__})")
    return ComponentStatus(status="ready")

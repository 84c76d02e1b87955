from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from iptv_manager_api.core.settings import settings
from iptv_manager_api.db.session import async_session
from iptv_manager_api.services.loyalty import LoyaltyError
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import LoyaltyJobScheduler


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def _resolve_schedule_path() -> Path:
    schedule_path = Path(settings.loyalty_job_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    schedule_path = _resolve_schedule_path()
    job_scheduler = LoyaltyJobScheduler(
        session_factory=_session_factory,
        config_path=schedule_path,
    )
    app.state.loyalty_job_scheduler = job_scheduler

    scheduler_enabled = settings.loyalty_job_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Loyalty job scheduler failed to start", error=str(exc))
        else:
            logger.info("Loyalty job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info(
            "Loyalty job scheduler disabled",
            reason="loyalty_job_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if scheduler_enabled and job_scheduler.is_running:
            await job_scheduler.stop()


async def _handle_loyalty_error(request: Request, exc: LoyaltyError) -> JSONResponse:
    log = logger.bind(path=request.url.path, code=exc.code, context=exc.extra)
    if exc.status_code >= 500:
        log.error("Loyalty request failed", detail=exc.message)
    else:
        log.info("Loyalty request rejected", detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


def create_app() -> FastAPI:
    """Application factory for the IPTV manager loyalty API."""
    configure_logging(
        service_name="iptv-manager-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        json_output=settings.log_json,
    )

    app = FastAPI(
        title="IPTV Manager API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="iptv-manager-api",
        service_version=APP_VERSION,
        environment=settings.environment,
        enabled=settings.tracing_enabled,
    )

    app.add_exception_handler(LoyaltyError, _handle_loyalty_error)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app

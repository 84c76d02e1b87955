from fastapi import APIRouter

from .endpoints import (
    health,
    loyalty_integrations,
    loyalty_points,
    loyalty_referrals,
    loyalty_rewards,
    observability,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(loyalty_points.router)
router.include_router(loyalty_referrals.router)
router.include_router(loyalty_rewards.router)
router.include_router(loyalty_integrations.router)
router.include_router(observability.router)

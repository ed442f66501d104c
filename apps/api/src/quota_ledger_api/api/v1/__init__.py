from fastapi import APIRouter

from .endpoints import checkin, groups, health, observability, redemptions

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(checkin.router)
router.include_router(redemptions.router)
router.include_router(groups.router)
router.include_router(observability.router)

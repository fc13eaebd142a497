"""
API Routes
"""
from fastapi import APIRouter

from omniflow.api.routes.events import router as events_router
from omniflow.api.routes.admin import router as admin_router

router = APIRouter()

router.include_router(events_router, prefix="/events", tags=["Events"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])

"""
Omniflow Engine - Main FastAPI Application
"""
from fastapi import FastAPI

from omniflow.core.config import settings
from omniflow.core.logging import setup_logging, get_logger
from omniflow.core.middleware import setup_middleware, setup_exception_handlers
from omniflow.api.routes import router as api_router
from omniflow.db.database import engine, Base
# רישום כל המודלים ב-metadata לפני create_all
from omniflow.db import models  # noqa: F401

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Events", "description": "קליטת אירועי דומיין והודעות נכנסות למנועי האוטומציה וה-chatbots."},
    {"name": "Admin", "description": "מצב executions, איפוס ידני ולוגים של אוטומציות."},
    {"name": "Health", "description": "בדיקת חיוּת."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="מנוע אוטומציות ו-chatbot flows עבור פלטפורמת CRM רב-ערוצית.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from omniflow.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", summary="בדיקת חיוּת (Liveness Probe)", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Liveness probe: התהליך חי ומגיב."""
    return {"status": "healthy"}

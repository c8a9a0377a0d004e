"""
Truck Freight Core - Main FastAPI Application
"""
from fastapi import FastAPI

from freight.api.routes import router as api_router
from freight.core.config import settings
from freight.core.logging import get_logger, setup_logging
from freight.core.middleware import setup_exception_handlers, setup_middleware
from freight.db.database import Base, engine
import freight.db.models  # noqa: F401  (registers every table on Base.metadata)

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON and not settings.DEBUG,
)

logger = get_logger(__name__)

_OPENAPI_TAGS = [
    {"name": "cargo-requests", "description": "Cargo requests: create, edit, assign, pick up, deliver, cancel."},
    {"name": "bids", "description": "Time-limited driver offers on pending requests."},
    {"name": "trips", "description": "Trip execution phases, tracking and completion."},
    {"name": "payments", "description": "Settlement through a payment gateway or wallets."},
    {"name": "wallets", "description": "Append-only wallet ledger."},
    {"name": "commission-rules", "description": "Platform commission rules and quotes."},
    {"name": "ratings", "description": "Post-trip ratings between drivers and cargo owners."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Freight marketplace core: cargo requests, bidding, trips, commission, payments and wallets.",
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
    from freight.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["health"], summary="Liveness probe")
async def health_check() -> dict[str, str]:
    """The process is up; dependencies are not checked here"""
    return {"status": "healthy"}

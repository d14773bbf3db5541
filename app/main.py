from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.config import settings
from app.api.v1.router import api_router
from app.core.exceptions import VaccineStockError
from app.database import init_db, async_session_factory
from app.jobs.scheduler import NotificationScheduler
from app.services.notification_service import NotificationService

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Build the notifier shared by requests and jobs
    - Start the notification scheduler (when enabled)
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    notifier = NotificationService()
    scheduler = NotificationScheduler(settings, async_session_factory, notifier=notifier)
    app.state.notifier = notifier
    app.state.scheduler = scheduler

    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Notification scheduler disabled")

    yield

    # Shutdown
    scheduler.stop(wait=False)
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Stocks", "description": "Stock lots, stock lines and appointment dose reservations"},
    {"name": "Stock Transfers", "description": "Two-phase transfers between adjacent tiers"},
    {"name": "Notifications", "description": "Expiration alerts and appointment reminders"},
    {"name": "Health", "description": "Liveness and database checks"},
]

API_DESCRIPTION = """
## Vaccine Stock Ledger API

Lot-level vaccine stock for the national, regional, district and health center tiers.

| Module | Description |
|--------|-------------|
| **Stocks** | Lots with expiration, earliest-expiration-first consumption |
| **Stock Transfers** | Send, confirm, reject or cancel doses between tiers |
| **Notifications** | Threshold-based expiration alerts and guardian reminders |

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Validation failed |
| 403 | Owner not allowed to act on the resource |
| 404 | Resource doesn't exist |
| 409 | Concurrent modification, retry |
| 422 | Insufficient stock |
| 503 | Notification channel unavailable |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(VaccineStockError)
async def ledger_exception_handler(request: Request, exc: VaccineStockError):
    """Map domain errors to their HTTP status."""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "type": type(exc).__name__,
            "details": exc.details,
            "path": str(request.url.path),
        },
    )


# Global exception handler for anything unexpected
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, HTTPException):
        status_code = exc.status_code
        message = str(exc.detail)
    else:
        status_code = 500
        message = str(exc) if settings.DEBUG else "Internal server error"
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "type": type(exc).__name__,
            "path": str(request.url.path),
        },
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint with database validation."""
    scheduler = getattr(request.app.state, "scheduler", None)
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }

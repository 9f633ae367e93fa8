"""
NIMBUS - Main FastAPI Application

Weather-wager engine API with:
- Odds quoting and bet placement
- Two-source settlement and dispute administration
- Cash-out valuation and the auto cash-out poller
- Request tracing and error handling
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request, Response, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn

from app.core.config import get_settings
from app.core.database import get_database_manager, init_db
from app.core.exceptions import NimbusError
from app.services.betting import create_betting_system
from app.services.scheduling import SchedulerService
from app.services.weather import WeatherService
from app.api.routes import api_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()


# ============================================================================
# Lifespan Management
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Wires the betting services onto app.state and starts the background loops.
    """
    logger.info("=" * 60)
    logger.info(f"{settings.app_name} v{settings.app_version}")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug Mode: {settings.debug}")
    logger.info("Starting up...")

    db_manager = get_database_manager()
    weather = WeatherService()
    scheduler = None
    poller = None

    try:
        await db_manager.initialize()
        logger.info("✓ Database initialized")
        await init_db()
        logger.info("✓ Database tables ensured")

        services = create_betting_system(db_manager, weather, settings)
        app.state.services = services
        logger.info("✓ Betting services wired")

        scheduler = SchedulerService(services['resolver'], db_manager, services['accuracy'], settings)
        scheduler.initialize()
        await scheduler.start()
        app.state.scheduler = scheduler
        logger.info("✓ Scheduler service started")

        if settings.CASHOUT_ENABLED and settings.CASHOUT_POLLER_ENABLED:
            poller = services['poller']
            await poller.start()
            logger.info("✓ Cash-out poller started")

        logger.info("=" * 60)
        logger.info("All services initialized successfully!")
        logger.info(f"API available at: http://{settings.HOST}:{settings.PORT}")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    yield

    logger.info("Shutting down...")

    try:
        if poller:
            await poller.stop()
            logger.info("✓ Cash-out poller stopped")

        if scheduler:
            await scheduler.stop()
            logger.info("✓ Scheduler stopped")

        await weather.close()
        logger.info("✓ Weather clients closed")

        await db_manager.close()
        logger.info("✓ Database closed")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")

    logger.info("Shutdown complete")


# ============================================================================
# Create FastAPI Application
# ============================================================================

app = FastAPI(
    title=settings.app_name,
    description="Weather-wager engine: odds, settlement and cash-out",
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)


# ============================================================================
# Middleware
# ============================================================================

class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Add request tracking and timing."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled error in request {request_id}: {e}")
            raise

        duration = time.perf_counter() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration:.4f}s"
        return response


# Add middleware (order matters - first added is outermost)
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)

app.add_middleware(RequestTrackingMiddleware)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(NimbusError)
async def domain_exception_handler(request: Request, exc: NimbusError):
    """Map domain errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    content = exc.to_dict()
    content["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors."""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "detail": errors,
            "request_id": getattr(request.state, "request_id", None)
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
            "request_id": getattr(request.state, "request_id", None)
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions."""
    request_id = getattr(request.state, "request_id", None)
    logger.error(f"Unhandled exception [{request_id}]: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "detail": "An unexpected error occurred" if not settings.debug else str(exc),
            "request_id": request_id
        }
    )


# ============================================================================
# Include Routers
# ============================================================================

@app.get(settings.API_PREFIX)
async def api_root():
    """API root endpoint with available routes."""
    prefix = settings.API_PREFIX
    return {
        "version": "v1",
        "name": settings.app_name,
        "status": "operational",
        "endpoints": {
            "health": f"{prefix}/health",
            "odds": f"{prefix}/odds",
            "bets": f"{prefix}/bets",
            "cashout": f"{prefix}/cashout",
            "verification": f"{prefix}/verification",
            "settlement": f"{prefix}/settlement",
            "ledger": f"{prefix}/ledger",
        },
    }

app.include_router(api_router, prefix=settings.API_PREFIX)


# ============================================================================
# Root Endpoints
# ============================================================================

@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "operational",
        "docs": "/docs" if settings.debug else None,
        "health": f"{settings.API_PREFIX}/health"
    }


@app.get("/health")
async def health():
    """Simple health check endpoint."""
    return {"status": "healthy"}


# ============================================================================
# Run Application
# ============================================================================

def run():
    """Run the FastAPI application."""
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
        access_log=True,
    )


if __name__ == "__main__":
    run()

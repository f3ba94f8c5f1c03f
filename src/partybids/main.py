import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from partybids.api.v1 import aggregates, bids, maintenance
from partybids.core.config import settings
from partybids.core.database import get_db
from partybids.core.exceptions import (
    BidEngineError,
    BidReferenceError,
    BidValidationError,
    InvalidTransitionError,
    MaintenanceLockError,
    NotFoundError,
    StaleTopComparisonError,
)
from partybids.core.logging import setup_logging
from partybids.core.redis import close_redis, get_redis
from partybids.middleware.metrics import PrometheusMiddleware, metrics_endpoint
from partybids.services.backfill_service import BackfillEngine
from partybids.services.redis_service import RedisService

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Background task control
_drift_repair_task: asyncio.Task | None = None

ERROR_STATUS = {
    BidValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    BidReferenceError: status.HTTP_404_NOT_FOUND,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    MaintenanceLockError: status.HTTP_409_CONFLICT,
    StaleTopComparisonError: status.HTTP_202_ACCEPTED,
}


def status_for(exc: BidEngineError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def drift_repair_loop(interval: int):
    """Background task running a live backfill every ``interval`` seconds.

    Reconciles rows whose top comparison ran out of retries.
    """
    while True:
        try:
            await asyncio.sleep(interval)

            async for db in get_db():
                redis = await get_redis()
                engine = BackfillEngine(db, RedisService(redis))
                try:
                    report = await engine.run(dry_run=False)
                    if report.diffs:
                        logger.info(f"Drift repair fixed {len(report.diffs)} cached fields")
                except BidEngineError as e:
                    logger.warning(f"Drift repair skipped: {e}")
                break  # Only run once per iteration

        except asyncio.CancelledError:
            logger.info("Drift repair loop cancelled")
            break
        except Exception as e:
            logger.error(f"Error in drift repair loop: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    global _drift_repair_task

    # Startup
    logger.info("Starting application...")
    if settings.DRIFT_REPAIR_INTERVAL_SECONDS > 0:
        logger.info(f"Starting drift repair every {settings.DRIFT_REPAIR_INTERVAL_SECONDS}s")
        _drift_repair_task = asyncio.create_task(
            drift_repair_loop(settings.DRIFT_REPAIR_INTERVAL_SECONDS)
        )

    yield

    # Shutdown
    if _drift_repair_task:
        logger.info("Stopping background tasks")
        _drift_repair_task.cancel()
        try:
            await _drift_repair_task
        except asyncio.CancelledError:
            pass
        _drift_repair_task = None

    await close_redis()


app = FastAPI(
    title="PartyBids",
    version="1.0.0",
    description="Bid aggregation and consistency engine for shared listening parties",
    lifespan=lifespan,
)

# Prometheus Metrics Middleware (must be first to capture all requests)
app.add_middleware(PrometheusMiddleware)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BidEngineError)
async def bid_engine_exception_handler(request: Request, exc: BidEngineError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    elif status_code >= 400:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")

    content = {"error": exc.code, "detail": exc.message, **exc.details}
    if isinstance(exc, StaleTopComparisonError):
        content["bid_id"] = str(exc.bid_id) if exc.bid_id else None
    return JSONResponse(status_code=status_code, content=content)


# Include API routers
app.include_router(bids.router, prefix="/api/v1", tags=["bids"])
app.include_router(aggregates.router, prefix="/api/v1/aggregates", tags=["aggregates"])
app.include_router(maintenance.router, prefix="/api/v1/maintenance", tags=["maintenance"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# Prometheus metrics endpoint
app.add_route("/metrics", metrics_endpoint)

"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, sync, status, progress, market_values
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import dispose_engine
from core.exceptions import SyncError, SyncAlreadyRunningError, StageConfigurationError, RunStateError
from core.logging import setup_logging
from ingestion.runtime import build_runtime
from ingestion.scheduler import SyncScheduler
from schemas.api import ErrorResponse
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="MFL Sync Backend API",
    description="Marketplace sync orchestration and player market values",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(sync.router)
app.include_router(status.router)
app.include_router(progress.router)
app.include_router(market_values.router)


# ============================================================================
# Error handlers
# ============================================================================

def _error(status_code: int, exc: SyncError) -> JSONResponse:
    body = ErrorResponse(error=type(exc).__name__, detail=exc.message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(SyncAlreadyRunningError)
async def sync_already_running_handler(request: Request, exc: SyncAlreadyRunningError):
    return _error(409, exc)


@app.exception_handler(StageConfigurationError)
async def stage_configuration_handler(request: Request, exc: StageConfigurationError):
    return _error(400, exc)


@app.exception_handler(RunStateError)
async def run_state_handler(request: Request, exc: RunStateError):
    return _error(409, exc)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    logger.error(f"Unhandled sync error: {exc}", extra={"error_context": exc.to_dict()})
    return _error(500, exc)


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting MFL Sync Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    runtime = build_runtime()
    app.state.runtime = runtime
    app.state.store = runtime.store
    app.state.broadcaster = runtime.broadcaster
    app.state.orchestrator = runtime.orchestrator

    app.state.scheduler = None
    if settings.SYNC_SCHEDULE_ENABLED:
        scheduler = SyncScheduler(lambda: runtime.orchestrator, broadcaster=runtime.broadcaster)
        scheduler.start()
        app.state.scheduler = scheduler


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down MFL Sync Backend API")
    if app.state.scheduler is not None:
        app.state.scheduler.stop()
    await app.state.runtime.aclose()
    await dispose_engine()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "MFL Sync Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "sync": "/sync",
            "status": "/sync/status",
            "progress": "/sync/progress/{execution_id}",
            "market_values": "/market-values"
        }
    }

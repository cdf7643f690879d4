"""
Main FastAPI application entry point.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from cloudaudit.api.v1.router import api_router
from cloudaudit.core.config import settings
from cloudaudit.core.database import Base, SessionLocal, engine
from cloudaudit.core.dependencies import (
    get_consistency_service,
    get_inspection_service,
    get_progress_hub,
    get_result_store,
)
from cloudaudit.core.exceptions import ResultStoreError
from cloudaudit.core.logging_config import setup_logging
from cloudaudit.middleware.request_logging import RequestLoggingMiddleware
# Import models so they register with Base.metadata
from cloudaudit.models import InspectionItemResult  # noqa: F401
from cloudaudit.services.reconciliation import ReconciliationWorker

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


def _prepare_sql_store() -> None:
    # Run Alembic migrations if DATABASE_URL is set (cloud deployment)
    if os.getenv("DATABASE_URL"):
        try:
            from alembic import command
            from alembic.config import Config

            logger.info("[MIGRATION] DATABASE_URL detected, running Alembic migrations...")
            command.upgrade(Config("alembic.ini"), "head")
            logger.info("[MIGRATION] Alembic migrations completed (or already up-to-date)")
        except Exception as e:
            trace_id = str(uuid.uuid4())
            logger.warning(f"[MIGRATION] [{trace_id}] Alembic migration failed: {e}")
            logger.debug(f"[MIGRATION] [{trace_id}] Migration error details:", exc_info=True)
    else:
        logger.info("[MIGRATION] DATABASE_URL not set, skipping migrations (local dev mode)")

    # Fallback for local dev without Alembic
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created/verified successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}", exc_info=True)

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            db.commit()
            logger.info("Database connectivity verified")
        finally:
            db.close()
    except Exception as e:
        trace_id = str(uuid.uuid4())
        # Don't fail startup - the health endpoint reports the issue
        logger.error(f"[{trace_id}] Database connectivity test failed: {e}", exc_info=True)


async def _sweep_stale_connections(max_idle_seconds: int) -> None:
    hub = get_progress_hub()
    while True:
        await asyncio.sleep(max(max_idle_seconds // 3, 1))
        hub.sweep_stale(max_idle_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info(f"Starting up {settings.APP_NAME} ({settings.APP_ENV})...")

    if settings.RESULT_STORE_BACKEND == "sql":
        _prepare_sql_store()
    else:
        logger.info(f"Result store backend: {settings.RESULT_STORE_BACKEND}")

    worker = None
    if settings.RECONCILIATION_ENABLED:
        worker = ReconciliationWorker(
            store=get_result_store(),
            consistency_service=get_consistency_service(),
            interval_seconds=settings.RECONCILIATION_INTERVAL_SECONDS,
            auto_repair=settings.RECONCILIATION_AUTO_REPAIR,
        )
        worker.start()

    sweeper = asyncio.create_task(_sweep_stale_connections(settings.WS_STALE_AFTER_SECONDS))

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    sweeper.cancel()
    if worker is not None:
        worker.stop()
    # Only shut down a service that was actually created
    if get_inspection_service.cache_info().currsize:
        get_inspection_service().shutdown(wait_for_runs=False)


app = FastAPI(
    title="Cloud Inspection Core API",
    description="Runs security checks against customer cloud accounts and keeps their results",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

# Request logging middleware (must be added before other middleware)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors with trace_id."""
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))

    logger.error(
        f"[{trace_id}] Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )

    if isinstance(exc, HTTPException):
        raise exc
    if isinstance(exc, (SQLAlchemyError, ResultStoreError)):
        error_detail = "Result store error: check DATABASE_URL / RESULT_STORE_BACKEND"
        error_type = "ResultStoreError"
    else:
        error_detail = str(exc) if settings.DEBUG else "Internal Server Error"
        error_type = type(exc).__name__

    return JSONResponse(
        status_code=500,
        content={
            "detail": error_detail,
            "trace_id": trace_id,
            "error": error_type,
            "message": str(exc) if settings.DEBUG else "An unexpected error occurred",
        },
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": settings.APP_NAME,
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """
    Liveness endpoint for load balancers.

    Returns 200 without touching the result store; use /api/v1/health for readiness.
    """
    return {"status": "ok"}

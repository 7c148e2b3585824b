"""FastAPI application entry point."""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.routes import api_router
from app.core.config import settings
from app.core.errors import (
    DispatchError,
    DuplicateTaskError,
    NoCandidateAvailable,
    NotFoundError,
    ProviderError,
    StateConflict,
    ValidationError,
)
from app.core.metrics import MetricsMiddleware, metrics
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.services.scheduler_service import scheduler

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import json as _json

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return _json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next):
        # Skip logging for health checks and metrics scrapes
        if request.url.path in ["/health", "/health/ready", "/metrics", "/"]:
            return await call_next(request)

        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"
        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(
                f"Error: {request.method} {request.url.path} - "
                f"Exception: {str(e)} - Time: {time.time() - start_time:.3f}s - Client: {client_ip}"
            )
            raise

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            log_level,
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - Time: {time.time() - start_time:.3f}s - Client: {client_ip}"
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name}")

    # No migration tooling: create tables for SQLite dev databases
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(scheduler.start())
        logger.info("Dispatch scheduler started")

    yield

    # Stop scheduler; in-flight provider calls are abandoned, the
    # deliveries keep their last applied state and are polled again later
    if scheduler_task is not None:
        scheduler.stop()
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass

    logger.info(f"Shutting down {settings.app_name}")


app = FastAPI(
    title=settings.app_name,
    description="Restaurant delivery dispatch orchestrator",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# ===== Error handlers =====

def _error_response(status_code: int, exc: DispatchError, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__, **extra},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(401 if exc.authenticity else 400, exc)


@app.exception_handler(StateConflict)
async def state_conflict_handler(request: Request, exc: StateConflict):
    return _error_response(
        409, exc, delivery_id=exc.delivery_id, current_status=exc.current_status, event=exc.event
    )


@app.exception_handler(DuplicateTaskError)
async def duplicate_task_handler(request: Request, exc: DuplicateTaskError):
    return _error_response(409, exc)


@app.exception_handler(NoCandidateAvailable)
async def no_candidate_handler(request: Request, exc: NoCandidateAvailable):
    return _error_response(409, exc, delivery_id=exc.delivery_id)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(404, exc)


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"Provider error on {request.method} {request.url.path}: {exc}")
    return _error_response(502, exc, kind=exc.kind.value, platform=exc.platform)


# Metrics middleware (Prometheus-compatible)
app.add_middleware(MetricsMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - added last so it runs first (Starlette LIFO order)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-API-Key",
        "X-Signature",
        "X-Request-ID",
    ],
    max_age=600,  # Cache preflight for 10 minutes
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/health/ready")
def readiness_check():
    """Readiness probe with database and scheduler checks."""
    checks = {"database": "unknown", "scheduler": "unknown"}

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    if not settings.scheduler_enabled:
        checks["scheduler"] = "disabled"
    else:
        checks["scheduler"] = "healthy" if scheduler.running else "starting"

    all_healthy = checks["database"] == "healthy"
    return {
        "status": "ready" if all_healthy else "degraded",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": f"{settings.app_name} API",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/metrics")
def prometheus_metrics():
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(metrics.get_prometheus_metrics(), media_type="text/plain")

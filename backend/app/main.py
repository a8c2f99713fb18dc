"""
backend/app/main.py

Purpose:
    FastAPI application bootstrap: logging, store connections, audit component
    wiring, middleware, routers and exception handlers.

Dependencies:
    - app.database
    - app.services.audit_service
"""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

import app.database as _db
from app.config import AuditSettings, load_audit_settings, settings
from app.database import close_db, connect_db
from app.middleware.logging import StructuredLoggingMiddleware, setup_logging
from app.services.audit_errors import ConnectivityError, PermanentStoreError, TransientStoreError
from app.services.audit_service import build_audit_components

logger = logging.getLogger("taskaudit")


def reload_audit_config(application: FastAPI) -> AuditSettings:
    """Re-read the environment and push the new values into the audit components."""
    config = load_audit_settings()
    application.state.audit.reload(config)
    return config


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    await connect_db()

    app.state.audit = build_audit_components(
        _db.db,
        _db.session_factory,
        AuditSettings.from_settings(settings),
    )
    summary = await app.state.audit.health.get_health_summary()
    logger.info("Audit stores on startup: %s", summary["overall_status"])

    # `kill -HUP` re-reads AUDIT_* settings without a restart.
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, reload_audit_config, app)
    except (NotImplementedError, AttributeError):
        logger.info("SIGHUP config reload not available on this platform")

    yield

    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="Task management API with a resilient audit trail",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
from app.routers.logs import router as logs_router

app.include_router(logs_router)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        # Strip the "body" / "query" prefix for cleaner messages
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(ConnectivityError)
@app.exception_handler(TransientStoreError)
@app.exception_handler(ServerSelectionTimeoutError)
@app.exception_handler(ConnectionFailure)
async def store_unavailable_handler(request: Request, exc: Exception):
    logger.error("Audit store unavailable: %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(PermanentStoreError)
async def store_error_handler(request: Request, exc: PermanentStoreError):
    logger.error("Audit store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid input."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- aggregate status of the audit stores."""
    summary = await app.state.audit.health.get_health_summary()
    return {
        "status": summary["overall_status"],
        "stores": {name: info["status"] for name, info in summary["connections"].items()},
    }

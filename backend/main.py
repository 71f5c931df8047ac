# main.py - fleet-deploy API
# Features:
# - Request correlation IDs (propagated into every log record)
# - Security headers
# - Domain errors rendered as {"detail", "code", "request_id"}
# - Health check with DB verification

import os
import json
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from database import engine, init_db, close_db, get_db_session
from errors import FleetDeployError
from logging_system import (
    LogCategory, RequestContext, configure_logging, get_logger,
    reset_current_context, set_current_context,
)
from telemetry import setup_telemetry

APP_VERSION = "1.0.0"

configure_logging()
logger = get_logger()
request_logger = get_logger(LogCategory.REQUEST)


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 characters; set a long random value")

    if os.getenv("DATABASE_URL", "").startswith("sqlite") and os.getenv("ENVIRONMENT") == "production":
        warnings.append("SQLite in production: per-client row locks are process-local only, run a single worker")

    storage_root = os.getenv("ARTIFACT_STORAGE_ROOT", "./artifacts")
    if not os.path.isdir(storage_root):
        logger.info(f"Artifact store {storage_root} will be created on first upload")
    elif not os.access(storage_root, os.W_OK):
        warnings.append(f"Artifact store {storage_root} is not writable; uploads will fail")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting fleet-deploy v{APP_VERSION}")
    await init_db()
    _check_startup_config()
    # No-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app, engine)
    yield
    logger.info("Shutting down fleet-deploy")
    await close_db()


app = FastAPI(
    title="fleet-deploy",
    description="Update orchestration for a fleet of remote hosts",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:4321").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-API-Key", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "X-Checksum-SHA256", "Retry-After"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    ctx = RequestContext.create(
        request_id=request.headers.get("X-Request-ID"),
        correlation_id=request.headers.get("X-Correlation-ID"),
    )
    request.state.request_id = ctx.request_id
    request.state.correlation_id = ctx.correlation_id
    token = set_current_context(ctx)

    try:
        response = await call_next(request)
        duration = ctx.elapsed_ms / 1000

        response.headers["X-Request-ID"] = ctx.request_id
        response.headers["X-Correlation-ID"] = ctx.correlation_id
        response.headers["X-Response-Time"] = f"{duration:.4f}s"

        request_logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({duration:.3f}s) actor={ctx.actor or '-'}"
        )
        return response
    finally:
        reset_current_context(token)


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = response.headers.get("Cache-Control", "no-store")
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(FleetDeployError)
async def fleet_deploy_error_handler(request: Request, exc: FleetDeployError):
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.detail}")
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(request_id),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "code": "VALIDATION_ERROR",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "code": "INTERNAL_ERROR",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import agent, artifacts, audit, clients, updates, versions

app.include_router(clients.router)
app.include_router(versions.router)
app.include_router(artifacts.router)
app.include_router(agent.router)
app.include_router(updates.router)
app.include_router(audit.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": APP_VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
    }


@app.get("/")
async def root():
    return {
        "name": "fleet-deploy",
        "version": APP_VERSION,
        "description": "Update orchestration for a fleet of remote hosts",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") == "development",
        workers=int(os.getenv("WORKERS", 1)),
    )

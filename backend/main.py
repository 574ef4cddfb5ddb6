# main.py — TaskFlow API
# Features:
# - Request correlation IDs
# - Security headers (per-widget framing policy on /embed/*)
# - Uniform error envelope
# - Health check with DB verification
# - All routers registered

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent.client import ModelClient
from database import init_db, close_db, get_db_session
from errors import build_error_envelope, public_message
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("taskflow")

VERSION = "1.0.0"
EMBED_PATH_PREFIX = "/embed/"


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 characters; tokens will not survive a restart")

    if os.getenv("OPENAI_API_KEY"):
        logger.info(f"Agent model: {os.getenv('AGENT_MODEL', 'gpt-4o')}")
    else:
        warnings.append("OPENAI_API_KEY is not set; agent runs will fail until it is configured")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting TaskFlow API v{VERSION}")
    await init_db()
    _check_startup_config()
    # no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set
    setup_telemetry(app)
    app.state.model_client = ModelClient.from_env()
    yield
    logger.info("Shutting down TaskFlow API")
    await app.state.model_client.aclose()
    await close_db()


app = FastAPI(
    title="TaskFlow",
    description="Multi-tenant task management with AI agents and embeddable widgets",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID", "X-Embed-Token"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # Embed pages carry their own frame-ancestors policy and must stay frameable
    if request.url.path.startswith(EMBED_PATH_PREFIX):
        return response
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; img-src 'self' data: https:; frame-ancestors 'none'"
    )
    return response


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_envelope(
            str(exc.detail),
            getattr(request.state, "request_id", None),
            getattr(exc, "details", None),
        ),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "loc": [str(p) for p in err.get("loc", [])],
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "unknown")),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=build_error_envelope("Invalid request", getattr(request.state, "request_id", None), errors),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=build_error_envelope("Internal server error", getattr(request.state, "request_id", None)),
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import (  # noqa: E402
    auth, tasks, projects, members, audit_logs,
    embeds, embed_public, agent,
)

app.include_router(auth.router)
app.include_router(tasks.router)
app.include_router(projects.router)
app.include_router(members.router)
app.include_router(audit_logs.router)
app.include_router(embeds.router)
app.include_router(embed_public.router)
app.include_router(agent.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db_session)):
    """Health check with database connectivity verification"""
    checks = {"database_url": bool(os.getenv("DATABASE_URL")), "database": False}
    error = None
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        error = str(e)[:200]

    if checks["database_url"] and checks["database"]:
        return {"status": "ok", "version": VERSION, "checks": checks}

    content = {"status": "error", "version": VERSION, "checks": checks}
    message = public_message(error or "DATABASE_URL is not set", "")
    if message:
        content["detail"] = message
    return JSONResponse(status_code=503, content=content)


@app.get("/")
async def root():
    return {
        "name": "TaskFlow",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )

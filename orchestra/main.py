"""
MIDI Studio Orchestrator API

FastAPI application that accepts generation requests, runs the
generate → render → upload → publish pipeline in background workers, and
exposes each user's latest status.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from orchestra.config import settings
from orchestra.api.routes import artifacts, health, orchestrations, status
from orchestra.core.runtime import build_runtime, reset_runtime, set_runtime
from orchestra.db import init_db, close_db
from orchestra.errors import ValidationError
from orchestra.services.generation import close_generation_client
from orchestra.services.render import close_render_client
from orchestra.services.task_queue import QueueFullError


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)

        # Prevent clickjacking
        if "X-Frame-Options" not in response.headers:
            response.headers["X-Frame-Options"] = "DENY"

        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"

        # Referrer policy
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # Permissions policy (disable unnecessary features)
        response.headers["Permissions-Policy"] = (
            "accelerometer=(), camera=(), geolocation=(), "
            "gyroscope=(), magnetometer=(), microphone=(), "
            "payment=(), usb=()"
        )

        # HSTS is set by the reverse proxy in production

        return response


# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

limiter = orchestrations.limiter


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Generation service: {settings.generation_base_url}")
    logger.info(f"Render service: {settings.render_base_url}")
    logger.info(f"Artifact backend: {settings.artifact_backend}")

    if settings.status_backend == "database":
        try:
            await init_db()
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    runtime = build_runtime(settings)
    set_runtime(runtime)
    await runtime.start(sweep=settings.retention_sweep_enabled)

    # Warm up upstream connection pools so the first run incurs no
    # cold-start TCP/TLS handshake cost.
    for client in (runtime.generator, runtime.renderer):
        warmup = getattr(client, "warmup", None)
        if warmup is not None:
            await warmup()

    yield

    # Cleanup
    logger.info("Shutting down...")
    await runtime.stop()
    reset_runtime()
    await close_generation_client()
    await close_render_client()
    if settings.status_backend == "database":
        await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Asynchronous generation orchestration for MIDI Studio.\n\n"
        "`POST /api/v1/orchestrations` queues a run and returns `202` immediately; "
        "progress is read from `/api/v1/orchestrations/{userId}/status` "
        "(or its `/stream` SSE variant) until `ready` is true or `step` is `error`."
    ),
    lifespan=lifespan,
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# Adapter: FastAPI expects (Request, Exception) but slowapi's handler
# takes (Request, RateLimitExceeded). Narrow inside so the outer
# signature satisfies FastAPI's type contract.
def _handle_rate_limit(request: Request, exc: Exception) -> Response:
    if isinstance(exc, RateLimitExceeded):
        return _rate_limit_exceeded_handler(request, exc)
    raise exc


async def _handle_validation_error(request: Request, exc: Exception) -> Response:
    return JSONResponse(status_code=400, content={"message": str(exc)})


async def _handle_queue_full(request: Request, exc: Exception) -> Response:
    return JSONResponse(
        status_code=503,
        content={"message": "Generation queue is full. Please try again shortly."},
        headers={"Retry-After": "30"},
    )


# Add rate limiter to app state and exception handlers
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _handle_rate_limit)
app.add_exception_handler(ValidationError, _handle_validation_error)
app.add_exception_handler(QueueFullError, _handle_queue_full)

# Security headers middleware (added first, runs last)
app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware
if "*" in settings.cors_origins:
    logger.warning(
        "SECURITY WARNING: CORS allows all origins. "
        "Set ORCHESTRA_CORS_ORIGINS to specific domains in production."
    )
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(orchestrations.router, prefix="/api/v1", tags=["orchestrations"])
app.include_router(status.router, prefix="/api/v1", tags=["status"])
app.include_router(artifacts.router, prefix="/api/v1", tags=["artifacts"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }

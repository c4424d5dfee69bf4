# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Luna Identity Server - Main FastAPI application."""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from luna_server.config import settings
from luna_server.database import init_db
from luna_server.errors import AuthError, RateLimitedError, TooSoonError
from luna_server.routers import auth

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _get_cors_origins() -> list[str]:
    raw = (settings.cors_origins or "*").strip()
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    from luna_server.database import async_session_maker
    from luna_server.services.cleanup import code_cleanup_loop
    from luna_server.services.sessions import get_auth_service

    if not settings.google_client_id:
        logger.info("GOOGLE_CLIENT_ID not set - Google Sign-In is disabled")
    if not settings.device_verification_enabled:
        logger.warning("Device verification is disabled")

    cleanup_task = asyncio.create_task(
        code_cleanup_loop(async_session_maker, get_auth_service().limiter)
    )
    yield
    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task


app = FastAPI(
    title="Luna Identity Server",
    description="Registration, login, device verification and token management for Luna",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status, and duration for each request (no body or auth headers)."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render identity errors as {"detail", "code"} with the error's status."""
    content = {"detail": exc.message, "code": exc.error_code}
    headers = {}
    if isinstance(exc, TooSoonError):
        content["seconds_remaining"] = exc.seconds_remaining
        headers["Retry-After"] = str(exc.seconds_remaining)
    elif isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


# API v1
app.include_router(auth.router, prefix="/api/v1")


@app.get("/")
async def root():
    """API info."""
    return {
        "name": "Luna Identity Server",
        "version": "0.1.0",
        "api": "/api/v1",
        "docs": "/api/docs",
    }


@app.get("/api/v1/health")
async def health():
    """Health check for load balancers."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("luna_server.main:app", host=settings.host, port=settings.port)

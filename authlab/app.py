from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authlab.api.error_handling import register_exception_handlers
from authlab.api.routes import router
from authlab.config import get_settings
from authlab.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"


_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry sweeper on startup and stop it on shutdown."""
    global _cleanup_task
    from authlab.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_expiry_cleanup(runtime, runtime.settings.cleanup_interval_seconds)
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Authentication Lab", version=__version__, lifespan=lifespan)


if _settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id to the request's log lines.

    Taken from ``X-Request-ID`` when the client sends one, otherwise
    generated, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry credentials and must never be cached
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.secure_cookies:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from authlab.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "environment": runtime.settings.app_env.value,
        "users": len(runtime.directory.list_users()),
    }


async def _run_expiry_cleanup(runtime, interval_seconds: int) -> None:
    """Background loop that purges expired sessions, tokens, challenges and OAuth grants."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                purged = runtime.cleanup_expired()
                logger.debug("expiry_cleanup_complete", **purged)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - next tick retries
                logger.warning("expiry_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("expiry_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app

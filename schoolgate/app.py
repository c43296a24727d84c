from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from schoolgate.api.error_handling import register_exception_handlers
from schoolgate.api.routes import router
from schoolgate.config import get_settings
from schoolgate.logging import get_logger, set_correlation_id
from schoolgate.service.rate_limit import run_sweeper

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the local counter sweepers; release connections on shutdown."""
    from schoolgate.service.runtime import get_runtime

    runtime = get_runtime()
    sweepers: List[asyncio.Task] = [
        asyncio.create_task(
            run_sweeper(
                runtime.rate_local_cache,
                runtime.settings.rate_limit_sweep_interval_seconds,
                name="rate_limit",
            )
        ),
        asyncio.create_task(
            run_sweeper(
                runtime.upload_local_cache,
                runtime.settings.upload_limit_sweep_interval_seconds,
                name="file_upload",
            )
        ),
    ]
    logger.info("local_cache_sweepers_started", count=len(sweepers))

    yield

    for task in sweepers:
        task.cancel()
    for task in sweepers:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id from X-Request-ID or a fresh UUID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/health":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


async def _run_bounded(label: str, probe) -> bool:
    try:
        result = await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
        return bool(result)
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


async def health() -> Dict[str, Any]:
    """Report store and cache reachability."""
    from schoolgate.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = await _run_bounded("store", lambda: asyncio.to_thread(runtime.store.ping))
    cache_ok = await _run_bounded("cache", runtime.cache.ping)
    checks = {
        "store": {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        },
        "cache": {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        },
    }
    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    app = FastAPI(title="Schoolgate", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Type",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-FileUpload-Requests-Limit",
            "X-FileUpload-Requests-Remaining",
            "X-FileUpload-Files-Limit",
            "X-FileUpload-Files-Remaining",
            "X-FileUpload-Size-Limit",
            "X-FileUpload-Size-Remaining",
        ],
        max_age=3600,
    )
    app.middleware("http")(add_security_headers)
    # Registered last so it wraps everything else and sees every response
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return app


app = create_app()

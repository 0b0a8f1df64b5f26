from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatkeep.api.error_handling import register_exception_handlers
from chatkeep.api.routes import router
from chatkeep.api.socket import router as socket_router
from chatkeep.config import get_settings
from chatkeep.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so missing secrets fail at startup."""
    from chatkeep.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", environment=runtime.settings.environment.value)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="chatkeep", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-auth-token", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the caller's X-Request-ID (or a fresh one) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(socket_router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded storage check."""
    from chatkeep.service.runtime import get_runtime

    runtime = get_runtime()
    storage = "healthy"
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="storage")
        storage = "unhealthy"
    except Exception as exc:
        logger.error("health_check_storage_failed", error=str(exc))
        storage = "unhealthy"
    return {
        "status": "OK" if storage == "healthy" else "DEGRADED",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": runtime.settings.environment.value,
        "storage": storage,
        "version": __version__,
    }

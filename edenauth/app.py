from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from edenauth.api.error_handling import register_exception_handlers
from edenauth.api.routes import router
from edenauth.logging import get_logger, set_correlation_id
from edenauth.service.auth import AuthService

logger = get_logger(__name__)

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None

MIN_SESSION_CLEANUP_INTERVAL_SECONDS = 60


async def _run_session_cleanup(auth: AuthService, interval_seconds: int) -> None:
    """Background loop that sweeps expired sessions until cancelled."""

    interval = max(interval_seconds, MIN_SESSION_CLEANUP_INTERVAL_SECONDS)
    try:
        while True:
            # cleanup_expired_sessions logs its own failures
            await auth.cleanup_expired_sessions()
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; a missing signing secret aborts startup."""
    global _cleanup_task
    from edenauth.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.session_cleanup_enabled:
        _cleanup_task = asyncio.create_task(
            _run_session_cleanup(
                runtime.auth, runtime.settings.session_cleanup_interval_seconds
            )
        )
        logger.info(
            "session_cleanup_started",
            interval_seconds=runtime.settings.session_cleanup_interval_seconds,
        )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Eden Perfume Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation ID.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the X-Request-ID response header.
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
    # auth responses carry credentials and must not be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability."""
    from edenauth.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    """App factory for `uvicorn edenauth.app:create_app --factory`."""
    return app

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from tenantgate.api.error_handling import register_exception_handlers
from tenantgate.api.routes import router
from tenantgate.logging import get_logger, set_correlation_id
from tenantgate.storage.models import utcnow

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0
MIN_PURGE_INTERVAL_SECONDS = 30


async def _run_purge_loop(interval_seconds: int) -> None:
    """Periodically drop terminal sessions and retired codes and tokens."""
    from tenantgate.service.runtime import get_runtime

    interval = max(interval_seconds, MIN_PURGE_INTERVAL_SECONDS)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(get_runtime().sessions.purge_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("auth_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("auth_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tenantgate.service.runtime import get_runtime

    purge_task: asyncio.Task | None = None
    try:
        runtime = get_runtime()
        purge_task = asyncio.create_task(
            _run_purge_loop(runtime.settings.session_purge_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if purge_task:
            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task
        runtime = get_runtime()
        if runtime.cache is not None:
            await runtime.cache.close()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client-supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # auth responses carry session state and must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    from tenantgate.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

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
    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if store_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }


def create_app() -> FastAPI:
    application = FastAPI(title="TenantGate", version=__version__, lifespan=lifespan)
    # Starlette runs the last-registered middleware outermost
    application.middleware("http")(add_security_headers)
    application.middleware("http")(add_correlation_id)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return application


app = create_app()

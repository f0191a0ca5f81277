from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bookingdesk.api.error_handling import register_exception_handlers
from bookingdesk.api.routes import router
from bookingdesk.config import Settings
from bookingdesk.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

LOGIN_PRUNE_INTERVAL_SECONDS = 60
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_prune_task: asyncio.Task | None = None


async def _run_login_prune(interval_seconds: int) -> None:
    """Abandon login flows left parked in an MFA step past their TTL."""
    from bookingdesk.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                pruned = await get_runtime().logins.prune()
                if pruned:
                    logger.info("login_flows_pruned", count=pruned)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("login_prune_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("login_prune_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _prune_task
    from bookingdesk.service.runtime import get_runtime

    runtime = get_runtime()
    _prune_task = asyncio.create_task(_run_login_prune(LOGIN_PRUNE_INTERVAL_SECONDS))
    logger.info("app_started", version=__version__)

    yield

    try:
        if _prune_task:
            _prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _prune_task
        await runtime.shutdown()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="BookingDesk Console API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "session_id", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for structured logs and echo it as ``X-Request-ID``."""
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
    if request.url.path.startswith("/v1/") and not request.url.path.startswith("/v1/site/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus dependency checks for the record store and Redis."""
    from bookingdesk.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

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

    if runtime.records is runtime.store:
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        db_ok = await _run_bounded("database", runtime.records.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": "postgres"}
        overall_healthy = overall_healthy and db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["login_flows"] = {"status": "healthy", "active": len(runtime.logins)}
    checks["consoles"] = {"status": "healthy", "mounted": len(runtime.consoles)}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admauth.api.error_handling import register_exception_handlers
from admauth.api.routes import router
from admauth.config import Settings
from admauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

FORCE_LOGOUT_RELAY_RETRY_SECONDS = 5

_sweep_task: asyncio.Task | None = None
_relay_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session sweep and the force-logout relay; release resources
    on shutdown."""
    global _sweep_task, _relay_task
    from admauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _sweep_task = asyncio.create_task(_run_session_sweep(runtime))
        if runtime.cache is not None:
            _relay_task = asyncio.create_task(_run_force_logout_relay(runtime))
    except Exception as exc:
        logger.error("startup_background_tasks_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        for task in (_sweep_task, _relay_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="ADM Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        _settings.simulation_header,
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for structured logs.

    The id comes from the client's ``X-Request-ID`` header when present and
    is echoed back on the response.
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
    # Credential-bearing responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store and Redis reachability."""
    from admauth.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    try:
        runtime = get_runtime()
    except Exception as exc:
        logger.error("health_runtime_unavailable", error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "checks": {"runtime": {"status": "error"}}},
        )

    try:
        runtime.store.count_accounts()
        checks["store"] = {"status": "ok"}
    except Exception as exc:
        logger.warning("health_store_failed", error=str(exc))
        checks["store"] = {"status": "error"}
        healthy = False

    if runtime.cache is None:
        checks["redis"] = {"status": "disabled"}
    else:
        try:
            await asyncio.to_thread(runtime.cache.verify_connection)
            checks["redis"] = {"status": "ok"}
        except Exception as exc:
            logger.warning("health_redis_failed", error=str(exc))
            checks["redis"] = {"status": "error"}
            healthy = False

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )


async def _run_session_sweep(runtime) -> None:
    """Background loop marking expired sessions ``token_expired``.

    Validation re-checks expiry on every request, so the sweep only keeps
    session listings and subscribers current.
    """
    try:
        while True:
            try:
                await runtime.sessions.expire_stale()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error=str(exc))
            await asyncio.sleep(runtime.sessions.sweep_interval_seconds())
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")


async def _run_force_logout_relay(runtime) -> None:
    """Deliver force-logout events published by other workers to this
    worker's websocket subscribers, resubscribing after Redis errors."""
    try:
        while True:
            try:
                await runtime.broadcaster.relay(runtime.cache.force_logout_messages())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("force_logout_relay_failed", error=str(exc))
            await asyncio.sleep(FORCE_LOGOUT_RELAY_RETRY_SECONDS)
    except asyncio.CancelledError:
        logger.info("force_logout_relay_task_cancelled")


def create_app() -> FastAPI:
    return app

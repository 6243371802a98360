from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from warden import __version__
from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_housekeeping_task: asyncio.Task | None = None


async def _run_housekeeping(interval_seconds: int) -> None:
    """Background loop that sweeps expired sessions and passkey challenges."""
    from warden.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                removed = await asyncio.to_thread(get_runtime().housekeeping)
                if any(removed.values()):
                    logger.info("housekeeping_sweep_completed", **removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("housekeeping_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("housekeeping_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _housekeeping_task
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.housekeeping_interval_seconds > 0:
        _housekeeping_task = asyncio.create_task(
            _run_housekeeping(runtime.settings.housekeeping_interval_seconds)
        )

    yield

    try:
        if _housekeeping_task:
            _housekeeping_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _housekeeping_task
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Propagate ``X-Request-ID`` into log context and back to the client."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> JSONResponse:
        from warden.service.runtime import get_runtime

        checks: Dict[str, Any] = {}
        healthy = True
        runtime = get_runtime()
        for name, backend in (("store", runtime.store), ("locks", runtime.locks)):
            verify = getattr(backend, "verify_connection", None)
            if verify is None:
                checks[name] = {"status": "skipped"}
                continue
            try:
                await asyncio.to_thread(verify)
                checks[name] = {"status": "ok"}
            except Exception as exc:
                healthy = False
                checks[name] = {"status": "error", "error": type(exc).__name__}
                logger.warning("health_check_failed", check=name, error=str(exc))
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks},
        )

    return app


app = create_app()

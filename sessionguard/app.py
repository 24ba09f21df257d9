from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.logging import get_logger, start_request_context

logger = get_logger(__name__)

__version__ = "0.1.0"

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: float) -> None:
    """Periodically sweep expired cache entries and prune the logout ledger."""
    from sessionguard.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await get_runtime().engine.run_maintenance()
            if any(result.values()):
                logger.info("session_maintenance_complete", **result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("session_maintenance_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _maintenance_task
    # Startup
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.warmup_on_startup:
        try:
            await runtime.engine.warmup_cache()
        except Exception as exc:
            # Requests still validate against the durable store on cache misses
            logger.error("startup_warmup_failed", error_type=type(exc).__name__, error=str(exc))
    runtime.synchronizer.start_periodic_flush()
    _maintenance_task = asyncio.create_task(
        _run_maintenance(float(runtime.settings.write_throttle_seconds))
    )

    yield

    # Shutdown
    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
            _maintenance_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionGuard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_request_context(request, call_next):
    """Tag every log line of a request with its ``X-Request-ID`` and echo it back."""
    request_id = start_request_context(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


register_exception_handlers(app)
app.include_router(router)

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from convoflow.api.error_handling import register_exception_handlers
from convoflow.api.routes import router
from convoflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain background bursts on shutdown."""
    from convoflow.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Convoflow", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id.

    Taken from the X-Request-ID header when the caller supplies one, otherwise
    generated. It is bound into log context and echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_api_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report backing store reachability and version info."""
    from convoflow.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.cache.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["backing_store"] = {"status": "healthy", "type": type(runtime.cache).__name__}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="backing_store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["backing_store"] = {"status": "unhealthy", "error": "timeout"}
    except Exception as exc:
        logger.error("health_check_backing_store_failed", error=str(exc))
        checks["backing_store"] = {"status": "unhealthy", "error": type(exc).__name__}

    healthy = all(check["status"] == "healthy" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "ai_mode": runtime.ai.backend.mode,
            "checks": checks,
        },
    )


def create_app() -> FastAPI:
    return app

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request

from coursegate.api.error_handling import TRACE_HEADER, register_exception_handlers
from coursegate.api.routes import router
from coursegate.config import Settings, get_settings
from coursegate.logging import get_logger, set_trace_id
from coursegate.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_TRACE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


async def add_trace_id(request: Request, call_next):
    """Bind the request's trace id to the logging context and echo it back.

    A well-formed ``X-Trace-Id`` from the client is reused; otherwise a new
    UUID is generated.
    """
    supplied = request.headers.get(TRACE_HEADER)
    if supplied and not _TRACE_ID_PATTERN.match(supplied):
        supplied = None
    trace_id = set_trace_id(supplied)
    request.state.trace_id = trace_id
    response = await call_next(request)
    response.headers[TRACE_HEADER] = trace_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens and must never be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store")
    return response


def create_app(settings: Settings | None = None, *, runtime: Runtime | None = None) -> FastAPI:
    """Build the application with its own runtime.

    Serve with ``uvicorn coursegate.app:create_app --factory``.
    """
    if runtime is None:
        runtime = Runtime(settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        try:
            await app.state.runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="coursegate", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    # Last registered runs first: trace id is bound before anything else
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_trace_id)

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report liveness and, when configured, Redis reachability."""
        checks: Dict[str, str] = {"store": "memory" if app.state.runtime.cache is None else "redis"}
        status = "ok"
        cache = app.state.runtime.cache
        if cache is not None:
            try:
                await cache.client.ping()
                checks["redis"] = "ok"
            except Exception as exc:
                logger.warning("health_redis_failed", error=str(exc))
                checks["redis"] = "unavailable"
                status = "degraded"
        return {"status": status, "version": __version__, "checks": checks}

    return app

"""FastAPI application factory and entry point.

Creates the application instance, wires the engine services, registers
middleware and exception handlers, and mounts the scraper routers.

Usage::

    # Development server (from project root)
    uvicorn webtoepub.api.main:app --reload

    # Installed console script (binds HOST:PORT from settings)
    webtoepub-server
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from webtoepub import __version__
from webtoepub.api.dependencies import EngineServices, build_services
from webtoepub.api.metrics import (
    get_metrics_response,
    http_request_duration_seconds,
    http_requests_total,
)
from webtoepub.config.settings import Settings, get_settings
from webtoepub.core.exceptions import SystemicError, WebToEpubError
from webtoepub.core.logging_config import configure_logging, request_id_var

# ---------------------------------------------------------------------------
# Logging configuration: applied once at module import time so that log
# records emitted during app construction are captured correctly.
# The log level is re-applied inside create_app() after settings are loaded.
# ---------------------------------------------------------------------------

configure_logging("INFO")

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def _handle_engine_error(request: Request, exc: WebToEpubError) -> JSONResponse:
    """Map any :class:`WebToEpubError` to its status and ``{"error"}`` body."""
    content: dict[str, object] = {"error": str(exc)}
    if isinstance(exc, SystemicError) and exc.details is not None:
        content["details"] = exc.details
    log_fn = logger.error if exc.status_code >= 500 else logger.warning
    log_fn("request_failed", error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(status_code=exc.status_code, content=content)


async def _handle_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed bodies and parameters as 400, not FastAPI's 422."""
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


async def _handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render framework HTTP errors (unknown routes, wrong methods) as ``{"error"}``."""
    message = "Not Found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": message},
        headers=getattr(exc, "headers", None),
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    services: EngineServices | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application.

    Separated from the module-level ``app`` singleton so that tests can
    build an application with their own settings and with services wired
    to a fake DNS lookup.

    Args:
        settings: Settings to use; defaults to :func:`get_settings`.
        services: Pre-built engine services; defaults to
            :func:`build_services` over ``settings``.

    Returns:
        A fully configured ``FastAPI`` instance.
    """
    settings = settings or get_settings()

    # Re-apply logging configuration with the correct level from settings.
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description=(
            "SSRF-safe fetch engine and job progress broadcaster for the "
            "WebToEpub novel scraper."
        ),
        version=__version__,
        debug=settings.debug,
        redirect_slashes=False,
    )
    application.state.settings = settings
    application.state.services = services or build_services(settings)

    if settings.allow_internal_ips:
        logger.warning("internal_ip_protection_disabled")

    # ---- Middleware --------------------------------------------------------

    wildcard = "*" in settings.allowed_origins
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @application.middleware("http")
    async def request_logging_middleware(
        request: Request, call_next: Callable
    ) -> Response:
        """Log every request, record its metrics and tag it with a request id.

        Args:
            request: The incoming HTTP request.
            call_next: The next middleware or route handler in the chain.

        Returns:
            The HTTP response from the handler, with ``X-Request-ID`` set.
        """
        request_id = str(uuid.uuid4())
        # Populate the ContextVar so stdlib logging records also carry the ID.
        request_id_var.set(request_id)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            raise
        finally:
            elapsed = time.perf_counter() - start
            status_code = getattr(response, "status_code", 500)
            route = request.scope.get("route")
            path_label = getattr(route, "path", "unmatched")
            http_requests_total.labels(
                method=request.method, path=path_label, status=str(status_code)
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method, path=path_label
            ).observe(elapsed)
            log_fn = logger.warning if status_code >= 400 else logger.info
            log_fn(
                "request_complete",
                status_code=status_code,
                elapsed_ms=round(elapsed * 1000, 2),
            )

        response.headers["X-Request-ID"] = request_id
        return response

    # ---- Exception handlers -------------------------------------------------

    application.add_exception_handler(WebToEpubError, _handle_engine_error)
    application.add_exception_handler(RequestValidationError, _handle_validation_error)
    application.add_exception_handler(StarletteHTTPException, _handle_http_error)

    # ---- Routers ------------------------------------------------------------

    from webtoepub.scraper.router import realtime_router, router as scraper_router  # noqa: PLC0415

    application.include_router(scraper_router, prefix="/api", tags=["scraper"])
    application.include_router(realtime_router, tags=["realtime"])

    # ---- Lifecycle events -------------------------------------------------

    @application.on_event("startup")
    async def on_startup() -> None:
        """Log application startup information."""
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            debug=settings.debug,
            log_level=settings.log_level,
            allow_internal_ips=settings.allow_internal_ips,
        )

    @application.on_event("shutdown")
    async def on_shutdown() -> None:
        """Cancel outstanding jobs and close the outbound HTTP client."""
        await application.state.services.aclose()
        logger.info("application_shutdown")

    # ---- System endpoints -------------------------------------------------

    @application.get("/", tags=["system"])
    async def root() -> JSONResponse:
        """Identify the service."""
        return JSONResponse({"status": "ok", "service": settings.app_name})

    @application.get("/health", tags=["system"])
    async def health() -> JSONResponse:
        """Return a minimal process-level liveness status.

        Used by container health checks and load balancers that need a fast
        ``200 OK`` without performing any I/O.

        Returns:
            JSON response with ``{"status": "ok"}`` and the number of jobs
            still running.
        """
        orchestrator = application.state.services.orchestrator
        return JSONResponse({"status": "ok", "active_jobs": orchestrator.active_count})

    if settings.metrics_enabled:

        @application.get("/metrics", tags=["system"], include_in_schema=False)
        async def metrics() -> Response:
            """Expose Prometheus metrics in the text exposition format."""
            body, content_type = get_metrics_response()
            return Response(content=body, media_type=content_type)

    return application


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

app = create_app()
"""The FastAPI application instance.

This is the ASGI callable passed to Uvicorn.
"""


def run() -> None:
    """Console-script entry point: serve :data:`app` on ``HOST:PORT``."""
    import uvicorn  # noqa: PLC0415

    settings = get_settings()
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )

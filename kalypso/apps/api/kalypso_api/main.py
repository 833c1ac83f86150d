"""Kalypso API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kalypso_api import __version__
from kalypso_api.audit.sinks import AuditSink, get_default_audit_sink
from kalypso_api.bridge.client import BridgeClient, BridgeSettings
from kalypso_api.config.env import get_cors_allowed_origins
from kalypso_api.context import (
    bridge_correlation_id_var,
    request_id_var,
    user_id_var,
    webhook_event_id_var,
)
from kalypso_api.errors import KalypsoError, ProviderError, ProviderTransientError
from kalypso_api.routers import (
    cards,
    health,
    kyc,
    liquidation,
    notifications,
    transfers,
    virtual_accounts,
    wallets,
    webhooks,
)
from kalypso_api.schemas import ProblemDetail
from kalypso_api.utils import configure_json_logging

logger = logging.getLogger(__name__)

PROBLEM_BASE = "https://api.kalypso.app/problems"


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:kalypso:trace:{request_id}" if request_id else f"urn:kalypso:trace:{uuid.uuid4()}"


def _problem_response(problem: ProblemDetail, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers or {},
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        409: "Conflict",
        412: "Precondition Failed",
        429: "Too Many Requests",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# Lifespan: shared Bridge client
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the process-wide Bridge client unless one was injected."""
    owns_client = getattr(app.state, "bridge_client", None) is None
    if getattr(app.state, "audit_sink", None) is None:
        app.state.audit_sink = get_default_audit_sink()
    if owns_client:
        app.state.bridge_client = BridgeClient(BridgeSettings.from_env(), audit_sink=app.state.audit_sink)
        logger.info(
            "BRIDGE_CLIENT_READY",
            extra={"environment": app.state.bridge_client.settings.environment},
        )
    try:
        yield
    finally:
        if owns_client:
            await app.state.bridge_client.aclose()
            app.state.bridge_client = None


def create_app(
    *,
    bridge_client: Optional[BridgeClient] = None,
    audit_sink: Optional[AuditSink] = None,
) -> FastAPI:
    """Build the API application.

    Args:
        bridge_client: Pre-built client (tests); created from BRIDGE_* env otherwise
        audit_sink: Audit destination; KALYPSO_AUDIT_SINK decides otherwise
    """
    app = FastAPI(
        title="Kalypso API",
        description="Backend-for-frontend over the Bridge.xyz stablecoin platform.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bridge_client = bridge_client
    app.state.audit_sink = audit_sink

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_allowed_origins(),  # Never "*" with credentials
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # ========================================================================
    # HTTP Request Completion Logging Middleware
    # ========================================================================

    @app.middleware("http")
    async def http_completion_logging_middleware(request: Request, call_next):
        """Emit one ``http.request.completed`` record per request, even on exceptions.

        Per-request contextvars are cleared before and after so values never
        leak between requests sharing an async task.
        """
        user_id_var.set("")
        bridge_correlation_id_var.set("")
        webhook_event_id_var.set("")

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "http.request.completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            user_id_var.set("")
            bridge_correlation_id_var.set("")
            webhook_event_id_var.set("")

    # ========================================================================
    # Request ID Middleware (MUST BE OUTERMOST)
    # ========================================================================

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Accept or generate X-Request-ID and echo it on the response.

        Registered last so it wraps every other middleware and the context
        variable is set in the parent async context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ========================================================================
    # RFC 9457 Global Exception Handlers
    # ========================================================================

    @app.exception_handler(KalypsoError)
    async def kalypso_error_handler(request: Request, exc: KalypsoError) -> JSONResponse:
        """Map domain errors to problem+json.

        Provider errors carry the Bridge correlation ID. Transient provider
        failures hide Bridge's message behind a retry hint.
        """
        detail = exc.message
        correlation_id = None
        headers = {}
        if isinstance(exc, ProviderError):
            correlation_id = exc.correlation_id
            if isinstance(exc, ProviderTransientError):
                detail = "Bridge is temporarily unavailable. Please try again shortly."
                headers["Retry-After"] = "5"

        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "REQUEST_FAILED",
            extra={
                "error_type": type(exc).__name__,
                "status_code": exc.http_status,
                "error_msg": exc.message,
                "correlation_id": correlation_id,
            },
        )

        problem = ProblemDetail(
            type=f"{PROBLEM_BASE}/{type(exc).__name__}",
            title=exc.title,
            status=exc.http_status,
            detail=detail,
            instance=_instance(),
            correlation_id=correlation_id,
        )
        return _problem_response(problem, headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Top-level RFC 9457 fields; dict details are preserved as-is."""
        if isinstance(exc.detail, dict) and "type" in exc.detail and "status" in exc.detail:
            content = dict(exc.detail)
            content.setdefault("instance", _instance())
            return JSONResponse(
                status_code=exc.status_code,
                content=content,
                media_type="application/problem+json",
                headers=getattr(exc, "headers", None) or {},
            )

        detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)
        problem = ProblemDetail(
            type=f"{PROBLEM_BASE}/http-{exc.status_code}",
            title=_get_title_for_status(exc.status_code),
            status=exc.status_code,
            detail=detail_value,
            instance=_instance(),
        )
        return _problem_response(problem, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first_error = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")

        problem = ProblemDetail(
            type=f"{PROBLEM_BASE}/validation-error",
            title="Request Validation Failed",
            status=422,
            detail=f"Invalid field '{field}': {msg}",
            instance=_instance(),
        )
        return _problem_response(problem)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "UNHANDLED_EXCEPTION",
            extra={"error_type": type(exc).__name__, "path": request.url.path},
            exc_info=True,
        )
        problem = ProblemDetail(
            type=f"{PROBLEM_BASE}/internal-error",
            title="Internal Server Error",
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred. Please try again later.",
            instance=_instance(),
        )
        return _problem_response(problem)

    app.include_router(health.router, tags=["health"])
    app.include_router(webhooks.router)
    app.include_router(kyc.router)
    app.include_router(wallets.router)
    app.include_router(transfers.router)
    app.include_router(cards.router)
    app.include_router(virtual_accounts.router)
    app.include_router(liquidation.router)
    app.include_router(notifications.router)

    return app


# Set KALYPSO_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("KALYPSO_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logger.info("Structured JSON logging enabled")

app = create_app()

import hmac
import logging
import re
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes.bundles import router as bundles_router
from app.api.routes.health import router as health_router
from app.api.routes.updates import router as updates_router
from app.core.config import AppEnvironment, settings
from app.core.errors import (
    HotUpdaterError,
    StoreUnavailableError,
    get_status_code,
)
from app.core.observability import (
    ObservabilityMiddleware,
    configure_structured_logging,
    extract_request_context,
    metrics_endpoint,
)
from app.core.rate_limit import RateLimitMiddleware
from app.core.telemetry import (
    init_telemetry,
    instrument_fastapi,
    shutdown_telemetry,
)
from app.engine.compatibility import CompatibilityMatcher
from app.engine.resolver import ResolutionConfig, ResolutionEngine
from app.engine.response import ResponseBuilder
from app.engine.rollout import RolloutSelector
from app.stores import build_bundle_store, build_storage
from app.stores.base import BundleStore, Storage
from app.stores.cache import CachedBundleStore

# Configure structured logging before creating logger
if settings.observability_structured_logs:
    configure_structured_logging(settings.app_log_level)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

# Seconds a client should wait before retrying after a store outage
STORE_RETRY_AFTER_SECONDS = 5


def _sanitize_error_details(details: dict[str, Any]) -> dict[str, Any]:
    """
    Sanitize error details to prevent information leakage in production.

    Removes file paths, SQL fragments, bucket keys and similar internals.
    """
    if settings.app_env != AppEnvironment.PROD:
        # In non-production, return all details for debugging
        return details

    sanitized = {}
    sensitive_patterns = [
        r"[/\\][\w/-]+\.py",  # File paths
        r"SELECT.*FROM",  # SQL queries (case insensitive)
        r"UPDATE.*SET",
        r"s3://",  # Storage locators
        r"postgres(ql)?(\+\w+)?://",  # Connection strings
    ]

    for key, value in details.items():
        if isinstance(value, str):
            for pattern in sensitive_patterns:
                if re.search(pattern, value, re.IGNORECASE):
                    sanitized[key] = "[REDACTED]"
                    break
            else:
                sanitized[key] = value
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_error_details(value)
        elif isinstance(value, list):
            sanitized[key] = [
                _sanitize_error_details(item) if isinstance(item, dict) else item for item in value
            ]
        else:
            sanitized[key] = value

    return sanitized


def _log_security_event(
    request: Request,
    event_type: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> None:
    """Log security-related events (rejected tokens) for audit trail."""
    security_event = {
        "event_type": event_type,
        "client_ip": request.client.host if request.client else "unknown",
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "user_agent": request.headers.get("user-agent", "unknown"),
        "details": details or {},
        **extract_request_context(request),
    }
    logger.warning(
        f"Security event: {event_type}",
        extra={
            "security_event": True,
            **security_event,
        },
    )


def create_app(
    store: BundleStore | None = None,
    storage: Storage | None = None,
    resolution_config: ResolutionConfig | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Sets up:
    - Bundle store, storage resolver and the resolution engine
    - OpenTelemetry distributed tracing
    - Structured logging with correlation IDs
    - CORS, observability and rate limiting middleware
    - Exception handlers for domain errors
    - API routers
    - Metrics endpoint for Prometheus scraping

    store/storage/resolution_config default to what settings describe.
    """
    app = FastAPI(
        title="Hot Update Server",
        description="Over-the-air bundle update resolution for React Native apps",
        version="0.1.0",
    )

    # ============================================================================
    # Resolution services
    # ============================================================================

    if store is None:
        bundle_store = build_bundle_store(settings)
    elif isinstance(store, CachedBundleStore):
        bundle_store = store
    else:
        bundle_store = CachedBundleStore(
            store,
            ttl_seconds=settings.bundle_cache_ttl_seconds,
            timeout_seconds=settings.bundle_store_timeout_seconds,
        )

    config = resolution_config or ResolutionConfig(
        rollback_to_builtin_when_unrecoverable=settings.rollback_to_builtin_when_unrecoverable,
    )
    app.state.bundle_store = bundle_store
    app.state.resolution_engine = ResolutionEngine(
        bundle_store,
        matcher=CompatibilityMatcher(),
        selector=RolloutSelector(),
        config=config,
    )
    app.state.response_builder = ResponseBuilder(storage or build_storage(settings))

    # ============================================================================
    # OpenTelemetry Distributed Tracing
    # ============================================================================

    @app.on_event("startup")
    async def startup_telemetry():
        """Initialize OpenTelemetry tracing and instrumentation."""
        init_telemetry(
            service_name=settings.otel_service_name,
            app_env=settings.app_env.value,
            app_region=settings.app_region,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
            otlp_headers=settings.otel_exporter_otlp_headers,
            sampler_name=settings.otel_traces_sampler,
            sampler_arg=settings.otel_traces_sampler_arg,
        )
        instrument_fastapi(app)
        # SQLAlchemy instrumentation happens in app/core/db.py once the engine exists

    @app.on_event("shutdown")
    async def shutdown_app():
        """Close the bundle store and flush pending spans."""
        await bundle_store.close()
        shutdown_telemetry()

    # ============================================================================
    # Middleware
    # ============================================================================

    if settings.observability_enabled:
        app.add_middleware(ObservabilityMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["GET", "PATCH", "POST"],
        allow_headers=["*"],
    )

    app.add_middleware(RateLimitMiddleware)

    # ============================================================================
    # Exception Handlers
    # ============================================================================

    @app.exception_handler(HotUpdaterError)
    async def hot_updater_error_handler(request: Request, exc: HotUpdaterError) -> JSONResponse:
        """
        Map domain exceptions to HTTP status codes and structured error bodies.

        StoreUnavailableError responses carry Retry-After so clients back off.
        """
        status_code = get_status_code(exc)

        context = {
            "details": exc.details,
            "path": request.url.path,
            **extract_request_context(request),
        }

        if status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}", extra=context)
        elif status_code in (401, 403):
            _log_security_event(
                request,
                event_type="AUTH_FAILURE" if status_code == 401 else "AUTHZ_FAILURE",
                status_code=status_code,
                details={"reason": exc.message},
            )
        else:
            logger.warning(f"{exc.__class__.__name__}: {exc.message}", extra=context)

        headers = None
        if isinstance(exc, StoreUnavailableError):
            headers = {"Retry-After": str(STORE_RETRY_AFTER_SECONDS)}

        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.__class__.__name__,
                "message": exc.message,
                "details": _sanitize_error_details(exc.details),
            },
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Consistent error body for FastAPI HTTP exceptions (health/metrics tokens)."""
        if exc.status_code in (401, 403):
            _log_security_event(
                request,
                event_type="AUTH_FAILURE" if exc.status_code == 401 else "AUTHZ_FAILURE",
                status_code=exc.status_code,
                details={"reason": str(exc.detail)},
            )
        elif exc.status_code >= 500:
            logger.error(
                f"HTTP {exc.status_code}: {exc.detail}",
                extra={"path": request.url.path, **extract_request_context(request)},
            )

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTPException",
                "message": exc.detail,
                "details": {},
            },
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Catch-all handler for unexpected exceptions.

        Logs the full exception and returns a generic 500 error to the client
        without exposing internal implementation details.
        """
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=True,
            extra={"path": request.url.path, **extract_request_context(request)},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
                "details": {},
            },
        )

    # ============================================================================
    # Router Registration
    # ============================================================================

    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(updates_router, prefix=API_PREFIX)
    app.include_router(bundles_router, prefix=API_PREFIX)

    # ============================================================================
    # Metrics Endpoint (Prometheus) - Token Protected
    # ============================================================================

    async def protected_metrics(request: Request) -> Response:
        """
        Protected Prometheus metrics endpoint.

        Always requires the X-Metrics-Token header.
        """
        expected_token = settings.metrics_token
        if not expected_token:
            logger.error(
                "Metrics endpoint accessed but METRICS_TOKEN not configured",
                extra={"security_event": True, "event_type": "METRICS_NOT_CONFIGURED"},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Metrics token not configured. Set METRICS_TOKEN environment variable.",
            )

        # Constant-time comparison
        metrics_token = request.headers.get("X-Metrics-Token")
        if not hmac.compare_digest(metrics_token or "", expected_token):
            logger.warning(
                "Unauthorized metrics access attempt",
                extra={
                    "security_event": True,
                    "event_type": "METRICS_ACCESS_DENIED",
                    "client_ip": request.client.host if request.client else "unknown",
                },
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid metrics token",
            )

        return metrics_endpoint()

    if settings.observability_enabled:
        app.add_route("/metrics", protected_metrics)

    return app


app = create_app()

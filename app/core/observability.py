"""
Observability module for the update server.

Provides:
- Structured logging with JSON format and correlation IDs
- Request correlation ID (request_id) generation and propagation
- Prometheus metrics collection (HTTP, bundle store, update checks)
- Request tracking middleware for latency and status codes
- Context management for device_id and region

Usage:
    from app.core.observability import (
        get_request_id,
        set_correlation_id,
        metrics,
    )
"""

import json
import logging
import time
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from fastapi import Request, Response
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match
from starlette.types import ASGIApp

# ============================================================================
# Context Variables for Request Tracking
# ============================================================================

# Correlation ID - links all logs for a single request
_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Client device identifier from x-device-id
_device_id_ctx: ContextVar[str] = ContextVar("device_id", default="")

# Region for deployment isolation
_region_ctx: ContextVar[str] = ContextVar("region", default="")

DEVICE_ID_HEADER = "x-device-id"
UNMATCHED_ROUTE = "unmatched"


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def get_request_id() -> str:
    """Get the current request ID from context."""
    return _request_id_ctx.get()


def set_correlation_id(request_id: str) -> None:
    """Set the correlation ID for the current request context."""
    _request_id_ctx.set(request_id)


def get_device_id() -> str:
    """Get the current device ID from context."""
    return _device_id_ctx.get()


def set_device_id(device_id: str) -> None:
    """Set the device ID for the current request context."""
    _device_id_ctx.set(device_id)


def get_region() -> str:
    """Get the current region from context."""
    return _region_ctx.get()


def set_region(region: str) -> None:
    """Set the region for the current request context."""
    _region_ctx.set(region)


# ============================================================================
# Structured Logging Configuration
# ============================================================================

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs as JSON with standard fields:
    - timestamp: ISO 8601 format
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - request_id: Correlation ID (if available)
    - trace_id: OpenTelemetry trace ID (if available)
    - span_id: OpenTelemetry span ID (if available)
    - device_id: Requesting device (if available)
    - region: Deployment region (if available)
    - extra: Any additional context from logging.extra
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_entry["request_id"] = request_id

        from app.core.telemetry import get_span_id, get_trace_id

        trace_id = get_trace_id()
        if trace_id:
            log_entry["trace_id"] = trace_id

        span_id = get_span_id()
        if span_id:
            log_entry["span_id"] = span_id

        device_id = get_device_id()
        if device_id:
            log_entry["device_id"] = device_id

        region = get_region()
        if region:
            log_entry["region"] = region

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        log_entry["file"] = record.pathname
        log_entry["line"] = record.lineno
        log_entry["function"] = record.funcName

        # Fields passed via logger.info("msg", extra={...})
        extra_keys = {
            k: v for k, v in record.__dict__.items() if k not in _RESERVED_RECORD_KEYS
        }
        if extra_keys:
            log_entry["extra"] = extra_keys

        return json.dumps(log_entry, default=str)


def configure_structured_logging(level: str = "INFO") -> None:
    """
    Configure root logger with structured JSON formatting.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)


# ============================================================================
# Prometheus Metrics
# ============================================================================

# Use a custom registry to avoid conflicts with other Prometheus metrics
_registry = CollectorRegistry()


class Metrics:
    """
    Centralized metrics collection for the application.

    Metrics groups:
    - HTTP: Request rate, errors, latency
    - Update checks: Decisions by status and platform
    - Bundle store: Fetch latency, errors, cache hits, malformed records
    - Database: Query timing for the SQL store
    """

    def __init__(self, registry: CollectorRegistry) -> None:
        self.registry = registry

        # -------------------------------------------------------------------
        # HTTP Metrics
        # -------------------------------------------------------------------

        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "route", "status_code", "region"],
            registry=self.registry,
        )

        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency in seconds",
            ["method", "route", "region"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry,
        )

        self.http_requests_in_progress = Gauge(
            "http_requests_in_progress",
            "HTTP requests currently in progress",
            ["method", "route", "region"],
            registry=self.registry,
        )

        self.http_errors_total = Counter(
            "http_errors_total",
            "Total HTTP errors",
            ["error_type", "method", "route", "region"],
            registry=self.registry,
        )

        # -------------------------------------------------------------------
        # Update Check Metrics
        # -------------------------------------------------------------------

        self.update_checks_total = Counter(
            "update_checks_total",
            "Total update checks by resolved status",
            ["status", "platform"],
            registry=self.registry,
        )

        # -------------------------------------------------------------------
        # Bundle Store Metrics
        # -------------------------------------------------------------------

        self.bundle_store_fetch_seconds = Histogram(
            "bundle_store_fetch_seconds",
            "Bundle store listing latency in seconds",
            ["backend"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self.registry,
        )

        self.bundle_store_errors_total = Counter(
            "bundle_store_errors_total",
            "Bundle store read failures",
            ["backend", "reason"],
            registry=self.registry,
        )

        self.bundle_cache_total = Counter(
            "bundle_cache_total",
            "Bundle listing cache lookups",
            ["result"],
            registry=self.registry,
        )

        self.malformed_bundle_records_total = Counter(
            "malformed_bundle_records_total",
            "Bundle records skipped because they could not be parsed",
            registry=self.registry,
        )

        # -------------------------------------------------------------------
        # Database Metrics
        # -------------------------------------------------------------------

        self.db_query_duration_seconds = Histogram(
            "db_query_duration_seconds",
            "Database query duration in seconds",
            ["operation", "region"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self.registry,
        )

        self.db_queries_total = Counter(
            "db_queries_total",
            "Total database queries",
            ["operation", "status", "region"],
            registry=self.registry,
        )


# Global metrics instance
metrics = Metrics(_registry)


# ============================================================================
# Middleware
# ============================================================================


def route_template(request: Request) -> str:
    """
    Return the path template of the route that will serve the request.

    Path parameters carry app versions and device ids, so metrics are labelled
    by template, never by the raw URL.
    """
    app = request.scope.get("app")
    router = getattr(app, "router", None)
    for route in getattr(router, "routes", ()):
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", UNMATCHED_ROUTE)
    return UNMATCHED_ROUTE


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds observability to all requests.

    Features:
    - Generates and propagates request_id (correlation ID)
    - Captures the client device id for log correlation
    - Logs all requests with structured fields
    - Tracks request latency
    - Records Prometheus metrics
    - Adds request_id to response headers
    """

    def __init__(
        self,
        app: ASGIApp,
        metrics_instance: Metrics | None = None,
        skip_paths: list[str] | None = None,
    ) -> None:
        super().__init__(app)
        self.metrics = metrics_instance or metrics
        self.skip_paths = set(skip_paths or ["/api/v1/health", "/api/v1/readyz", "/metrics"])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        from app.core.config import settings

        request_id = request.headers.get(
            settings.observability_request_id_header, generate_request_id()
        )
        set_correlation_id(request_id)
        set_region(settings.app_region)
        set_device_id(request.headers.get(DEVICE_ID_HEADER, ""))

        route_pattern = route_template(request)

        region = get_region() or "unknown"
        is_skipped_path = any(route_pattern.startswith(path) for path in self.skip_paths)

        self.metrics.http_requests_in_progress.labels(
            method=request.method, route=route_pattern, region=region
        ).inc()

        start_time = time.time()

        try:
            response = await call_next(request)

            latency_ms = (time.time() - start_time) * 1000

            self.metrics.http_requests_total.labels(
                method=request.method,
                route=route_pattern,
                status_code=response.status_code,
                region=region,
            ).inc()
            self.metrics.http_request_duration_seconds.labels(
                method=request.method, route=route_pattern, region=region
            ).observe(latency_ms / 1000)

            response.headers[settings.observability_request_id_header] = request_id

            if not is_skipped_path:
                logger = logging.getLogger("app.request")
                logger.info(
                    f"{request.method} {route_pattern}",
                    extra={
                        "method": request.method,
                        "route": route_pattern,
                        "status_code": response.status_code,
                        "latency_ms": round(latency_ms, 2),
                    },
                )

            return response

        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000

            error_type = type(e).__name__
            self.metrics.http_requests_total.labels(
                method=request.method,
                route=route_pattern,
                status_code=500,
                region=region,
            ).inc()
            self.metrics.http_errors_total.labels(
                error_type=error_type, method=request.method, route=route_pattern, region=region
            ).inc()
            self.metrics.http_request_duration_seconds.labels(
                method=request.method, route=route_pattern, region=region
            ).observe(latency_ms / 1000)

            logger = logging.getLogger("app.request")
            logger.error(
                f"{request.method} {route_pattern} - {error_type}: {str(e)}",
                extra={
                    "method": request.method,
                    "route": route_pattern,
                    "status_code": 500,
                    "latency_ms": round(latency_ms, 2),
                    "error_type": error_type,
                },
                exc_info=True,
            )
            raise

        finally:
            self.metrics.http_requests_in_progress.labels(
                method=request.method, route=route_pattern, region=region
            ).dec()


# ============================================================================
# Database Metrics Helper
# ============================================================================


class DBMetricsWrapper:
    """
    Wrapper to track database query metrics.

    Usage in stores:
        with db_metrics.track("list_bundles"):
            result = await session.execute(stmt)
    """

    def __init__(self, metrics_instance: Metrics | None = None) -> None:
        self.metrics = metrics_instance or metrics

    @contextmanager
    def track(self, operation: str):
        start = time.time()
        status = "success"
        region = get_region() or "unknown"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            self.metrics.db_query_duration_seconds.labels(
                operation=operation, region=region
            ).observe(time.time() - start)
            self.metrics.db_queries_total.labels(
                operation=operation, status=status, region=region
            ).inc()


db_metrics = DBMetricsWrapper()


# ============================================================================
# Metrics Endpoint
# ============================================================================


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    return Response(
        content=generate_latest(_registry),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def extract_request_context(request: Request) -> dict[str, Any]:
    """Extract observability context from request for logging."""
    return {
        "request_id": get_request_id(),
        "device_id": get_device_id() or request.headers.get(DEVICE_ID_HEADER, ""),
        "region": get_region() or "",
    }

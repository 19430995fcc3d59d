"""
OpenTelemetry distributed tracing configuration for the update server.

This module provides automatic instrumentation for:
- FastAPI (HTTP requests/responses)
- SQLAlchemy (bundle queries, database backend only)

and a tracer for the manual "resolve_update" span around each resolution.

Configuration via environment variables:
- OTEL_ENABLED: Enable/disable tracing (default: true)
- OTEL_SERVICE_NAME: Service name for traces (default: hot-update-server)
- OTEL_EXPORTER_OTLP_ENDPOINT: OTLP collector endpoint (default: http://localhost:4317)
- OTEL_EXPORTER_OTLP_HEADERS: Optional headers for OTLP exporter
- OTEL_TRACES_SAMPLER: Sampling strategy (default: parent_trace_always)
- OTEL_TRACES_SAMPLER_ARG: Sampling rate (default: 1.0)
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import (
    ALWAYS_OFF,
    ALWAYS_ON,
    ParentBased,
    Sampler,
    TraceIdRatioBased,
)

logger = logging.getLogger(__name__)

TRACER_NAME = "app.engine"

# Global tracer provider reference for shutdown
_tracer_provider: TracerProvider | None = None


def _parse_headers(headers_string: str | None) -> dict[str, str]:
    """
    Parse OTLP headers from environment variable format.

    Args:
        headers_string: Headers in format "key1=value1,key2=value2"

    Returns:
        Dictionary of headers
    """
    if not headers_string:
        return {}

    headers = {}
    for pair in headers_string.split(","):
        pair = pair.strip()
        if "=" in pair:
            key, value = pair.split("=", 1)
            headers[key.strip()] = value.strip()
    return headers


def _create_resource(
    service_name: str,
    app_env: str,
    app_region: str,
    app_version: str = "0.1.0",
) -> Resource:
    attributes = {
        SERVICE_NAME: service_name,
        DEPLOYMENT_ENVIRONMENT: app_env,
        "app.region": app_region,
        "service.version": app_version,
        "telemetry.sdk.language": "python",
        "telemetry.sdk.name": "opentelemetry",
        "telemetry.sdk.auto_instrumented": "false",
    }
    return Resource.create(attributes)


def _build_sampler(sampler_name: str, sampler_arg: float) -> Sampler:
    """Map OTEL_TRACES_SAMPLER values onto SDK samplers."""
    if sampler_name == "always_on":
        return ALWAYS_ON
    if sampler_name == "always_off":
        return ALWAYS_OFF
    if sampler_name == "traceidratio":
        return TraceIdRatioBased(sampler_arg)
    # parent_trace_always (default)
    return ParentBased(root=TraceIdRatioBased(sampler_arg))


def init_telemetry(
    service_name: str | None = None,
    app_env: str | None = None,
    app_region: str | None = None,
    otlp_endpoint: str | None = None,
    otlp_headers: str | None = None,
    sampler_name: str | None = None,
    sampler_arg: float | None = None,
) -> TracerProvider | None:
    """
    Initialize OpenTelemetry distributed tracing.

    Sets up:
    - Tracer provider with resource attributes
    - OTLP span exporter (with configurable endpoint and headers)
    - Batch span processor for efficient export

    Arguments default to the corresponding settings.

    Returns:
        TracerProvider instance if enabled, None otherwise
    """
    global _tracer_provider

    from app.core.config import settings

    service_name = service_name or settings.otel_service_name
    app_env = app_env or settings.app_env.value
    app_region = app_region or settings.app_region
    otlp_endpoint = otlp_endpoint or settings.otel_exporter_otlp_endpoint
    otlp_headers = otlp_headers or settings.otel_exporter_otlp_headers
    sampler_name = sampler_name or settings.otel_traces_sampler
    sampler_arg = sampler_arg if sampler_arg is not None else settings.otel_traces_sampler_arg

    if not settings.otel_enabled:
        logger.info("OpenTelemetry tracing is disabled (OTEL_ENABLED=false)")
        return None

    try:
        resource = _create_resource(
            service_name=service_name,
            app_env=app_env,
            app_region=app_region,
        )
        tracer_provider = TracerProvider(
            resource=resource, sampler=_build_sampler(sampler_name, sampler_arg)
        )
        _tracer_provider = tracer_provider

        # gRPC OTLP exporter (port 4317)
        span_exporter: SpanExporter = OTLPSpanExporter(
            endpoint=otlp_endpoint,
            headers=_parse_headers(otlp_headers),
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
        trace.set_tracer_provider(tracer_provider)

        logger.info(
            f"OpenTelemetry initialized: service={service_name}, "
            f"environment={app_env}, region={app_region}, "
            f"endpoint={otlp_endpoint}, sampler={sampler_name}"
        )
        return tracer_provider

    except Exception as e:
        logger.error(f"Failed to initialize OpenTelemetry: {e}", exc_info=True)
        return None


def instrument_fastapi(app: Any) -> None:
    """Instrument FastAPI application with OpenTelemetry."""
    from app.core.config import settings

    if not settings.otel_enabled:
        logger.debug("OpenTelemetry disabled - skipping FastAPI instrumentation")
        return

    try:
        FastAPIInstrumentor.instrument_app(app)
        logger.info("FastAPI instrumentation enabled")
    except Exception as e:
        logger.error(f"Failed to instrument FastAPI: {e}", exc_info=True)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument SQLAlchemy engine with OpenTelemetry.

    Args:
        engine: SQLAlchemy engine instance (sync_engine of an AsyncEngine)
    """
    from app.core.config import settings

    if not settings.otel_enabled:
        logger.debug("OpenTelemetry disabled - skipping SQLAlchemy instrumentation")
        return

    try:
        SQLAlchemyInstrumentor().instrument(engine=engine, enable_commenter=True)
        logger.info("SQLAlchemy instrumentation enabled")
    except Exception as e:
        logger.error(f"Failed to instrument SQLAlchemy: {e}", exc_info=True)


def shutdown_telemetry() -> None:
    """
    Shutdown OpenTelemetry tracer provider gracefully.

    Flushes all pending spans and closes connections to OTLP collector.
    """
    global _tracer_provider

    if _tracer_provider is None:
        logger.debug("OpenTelemetry tracer provider not initialized")
        return

    try:
        logger.info("Shutting down OpenTelemetry tracer provider")
        _tracer_provider.shutdown()
        _tracer_provider = None
        logger.info("OpenTelemetry shutdown complete")
    except Exception as e:
        logger.error(f"Error during OpenTelemetry shutdown: {e}", exc_info=True)


def get_tracer() -> trace.Tracer:
    """Tracer for manual spans. A no-op tracer when tracing is not initialized."""
    return trace.get_tracer(TRACER_NAME)


def _current_span_context() -> trace.SpanContext | None:
    current_span = trace.get_current_span()
    # NonRecordingSpan is used when no span is active
    if current_span is None or not current_span.is_recording():
        return None
    return current_span.get_span_context()


def get_trace_id() -> str | None:
    """
    Get the current trace ID from OpenTelemetry context.

    Returns:
        Trace ID as hex string, or None if no active span
    """
    span_context = _current_span_context()
    if span_context is None:
        return None
    return format(span_context.trace_id, "032x")


def get_span_id() -> str | None:
    """
    Get the current span ID from OpenTelemetry context.

    Returns:
        Span ID as hex string, or None if no active span
    """
    span_context = _current_span_context()
    if span_context is None:
        return None
    return format(span_context.span_id, "016x")

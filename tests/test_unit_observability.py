"""
Unit tests for observability features.

Tests cover:
- Structured logging with JSON format
- Request correlation ID (request_id) generation and propagation
- Context variables (device_id, region)
- Prometheus metrics collection
- Request tracking middleware (route labels use path templates)
- Protected metrics endpoint
"""

import json
import logging
import re

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.observability import (
    UNMATCHED_ROUTE,
    ObservabilityMiddleware,
    StructuredFormatter,
    db_metrics,
    generate_request_id,
    get_device_id,
    get_region,
    get_request_id,
    metrics,
    metrics_endpoint,
    set_correlation_id,
    set_device_id,
    set_region,
)


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return metrics.registry.get_sample_value(name, labels or {}) or 0.0


class TestRequestContext:
    """Tests for request ID generation and context management."""

    def test_generate_request_id_returns_uuid_format(self):
        uuid_pattern = re.compile(
            r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
        )
        assert uuid_pattern.match(generate_request_id())

    def test_request_ids_are_unique(self):
        assert len({generate_request_id() for _ in range(100)}) == 100

    def test_context_round_trip(self):
        set_correlation_id("req-1")
        set_device_id("install-1")
        set_region("EU")
        assert get_request_id() == "req-1"
        assert get_device_id() == "install-1"
        assert get_region() == "EU"


class TestStructuredFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord(
            name="app.engine.resolver",
            level=logging.WARNING,
            pathname="resolver.py",
            lineno=10,
            msg="MalformedRecordWarning: %s",
            args=("bad id",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_outputs_json_with_standard_fields(self):
        set_correlation_id("req-42")
        set_device_id("install-9")
        entry = json.loads(StructuredFormatter().format(self._record()))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "app.engine.resolver"
        assert entry["message"] == "MalformedRecordWarning: bad id"
        assert entry["request_id"] == "req-42"
        assert entry["device_id"] == "install-9"
        assert "timestamp" in entry

    def test_extra_fields_are_nested(self):
        entry = json.loads(StructuredFormatter().format(self._record(channel="beta")))
        assert entry["extra"]["channel"] == "beta"

    def test_no_trace_id_without_active_span(self):
        entry = json.loads(StructuredFormatter().format(self._record()))
        assert "trace_id" not in entry


class TestObservabilityMiddleware:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(ObservabilityMiddleware)

        @app.get("/api/v1/echo")
        def echo():
            return {"request_id": get_request_id(), "device_id": get_device_id()}

        @app.get("/api/v1/devices/{device_id}")
        def device(device_id: str):
            return {"device_id": device_id}

        @app.get("/api/v1/boom")
        def boom():
            raise RuntimeError("boom")

        return TestClient(app)

    def test_generates_request_id_header(self, client):
        resp = client.get("/api/v1/echo")
        assert resp.headers["X-Request-ID"] == resp.json()["request_id"]

    def test_propagates_incoming_request_id(self, client):
        resp = client.get("/api/v1/echo", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"

    def test_captures_device_id(self, client):
        resp = client.get("/api/v1/echo", headers={"x-device-id": "install-5"})
        assert resp.json()["device_id"] == "install-5"

    def test_counts_requests(self, client):
        labels = {
            "method": "GET",
            "route": "/api/v1/echo",
            "status_code": "200",
            "region": "LOCAL",
        }
        before = _sample("http_requests_total", labels)
        client.get("/api/v1/echo")
        assert _sample("http_requests_total", labels) == before + 1

    def test_route_label_uses_path_template(self, client):
        labels = {
            "method": "GET",
            "route": "/api/v1/devices/{device_id}",
            "status_code": "200",
            "region": "LOCAL",
        }
        before = _sample("http_requests_total", labels)
        for i in range(5):
            client.get(f"/api/v1/devices/install-{i}")
        assert _sample("http_requests_total", labels) == before + 5
        raw = dict(labels, route="/api/v1/devices/install-0")
        assert _sample("http_requests_total", raw) == 0.0

    def test_unmatched_paths_share_one_label(self, client):
        labels = {
            "method": "GET",
            "route": UNMATCHED_ROUTE,
            "status_code": "404",
            "region": "LOCAL",
        }
        before = _sample("http_requests_total", labels)
        client.get("/api/v1/nope-1")
        client.get("/api/v1/nope-2")
        assert _sample("http_requests_total", labels) == before + 2

    def test_counts_errors(self, client):
        labels = {
            "error_type": "RuntimeError",
            "method": "GET",
            "route": "/api/v1/boom",
            "region": "LOCAL",
        }
        before = _sample("http_errors_total", labels)
        with pytest.raises(RuntimeError):
            client.get("/api/v1/boom")
        assert _sample("http_errors_total", labels) == before + 1


class TestDBMetrics:
    def test_tracks_success(self):
        set_region("LOCAL")
        labels = {"operation": "list_bundles", "status": "success", "region": "LOCAL"}
        before = _sample("db_queries_total", labels)
        with db_metrics.track("list_bundles"):
            pass
        assert _sample("db_queries_total", labels) == before + 1

    def test_tracks_error(self):
        set_region("LOCAL")
        labels = {"operation": "update_bundle", "status": "error", "region": "LOCAL"}
        before = _sample("db_queries_total", labels)
        with pytest.raises(ValueError):
            with db_metrics.track("update_bundle"):
                raise ValueError("boom")
        assert _sample("db_queries_total", labels) == before + 1


class TestUpdateMetrics:
    def test_update_check_counted_by_status(self, client):
        labels = {"status": "UPDATE", "platform": "ios"}
        before = _sample("update_checks_total", labels)
        headers = {"x-app-platform": "ios", "x-app-version": "1"}
        client.get("/api/v1/update-check", headers=headers)
        assert _sample("update_checks_total", labels) == before + 1

    def test_cache_hits_and_misses_counted(self, client):
        headers = {"x-app-platform": "ios", "x-app-version": "1", "x-channel": "metrics-test"}
        misses = _sample("bundle_cache_total", {"result": "miss"})
        hits = _sample("bundle_cache_total", {"result": "hit"})
        client.get("/api/v1/update-check", headers=headers)
        client.get("/api/v1/update-check", headers=headers)
        assert _sample("bundle_cache_total", {"result": "miss"}) == misses + 1
        assert _sample("bundle_cache_total", {"result": "hit"}) == hits + 1


class TestMetricsEndpoint:
    def test_renders_prometheus_text(self):
        resp = metrics_endpoint()
        assert resp.media_type.startswith("text/plain")
        assert b"update_checks_total" in resp.body

    def test_requires_token(self, client):
        assert client.get("/metrics").status_code == 403

    def test_wrong_token(self, client):
        assert client.get("/metrics", headers={"X-Metrics-Token": "nope"}).status_code == 403

    def test_with_token(self, client):
        resp = client.get("/metrics", headers={"X-Metrics-Token": "test-metrics-token"})
        assert resp.status_code == 200
        assert "bundle_store_fetch_seconds" in resp.text


class TestRouteLabels:
    def test_path_form_update_check_labelled_by_template(self, client):
        nil = "00000000-0000-0000-0000-000000000000"
        template = (
            "/api/v1/app-version/{platform}/{app_version}/{channel}"
            "/{min_bundle_id}/{bundle_id}/{device_id}"
        )
        labels = {"method": "GET", "route": template, "status_code": "200", "region": "LOCAL"}
        before = _sample("http_requests_total", labels)
        for i in range(3):
            client.get(f"/api/v1/app-version/ios/1.0.0/production/{nil}/{nil}/device-{i}")
        assert _sample("http_requests_total", labels) == before + 3

"""
Tests for rate limiting middleware.

Tests cover:
- InMemoryRateLimiter class functionality
- Rate string parsing
- Bucket selection per path
- IP-based limiting regardless of device id
- 429 responses with Retry-After
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.config import AppEnvironment
from app.core.rate_limit import (
    InMemoryRateLimiter,
    RateLimitMiddleware,
    get_rate_limiter,
    parse_rate,
)


class TestInMemoryRateLimiter:
    """Tests for the InMemoryRateLimiter class."""

    def test_is_allowed_within_limit(self):
        """Requests within the limit are allowed."""
        limiter = InMemoryRateLimiter()
        assert limiter.is_allowed("device:a", "update-check", 5, 60) is True
        assert limiter.is_allowed("device:a", "update-check", 5, 60) is True

    def test_is_allowed_exceeds_limit(self):
        """Requests beyond the limit are blocked."""
        limiter = InMemoryRateLimiter()
        for _ in range(3):
            assert limiter.is_allowed("device:a", "update-check", 3, 60) is True
        assert limiter.is_allowed("device:a", "update-check", 3, 60) is False

    def test_different_identifiers_tracked_separately(self):
        limiter = InMemoryRateLimiter()
        assert limiter.is_allowed("device:a", "update-check", 1, 60) is True
        assert limiter.is_allowed("device:a", "update-check", 1, 60) is False
        assert limiter.is_allowed("device:b", "update-check", 1, 60) is True

    def test_different_buckets_tracked_separately(self):
        limiter = InMemoryRateLimiter()
        assert limiter.is_allowed("ip:1.2.3.4", "update-check", 1, 60) is True
        assert limiter.is_allowed("ip:1.2.3.4", "bundles", 1, 60) is True

    def test_window_expiry(self):
        """Old requests fall out of the sliding window."""
        limiter = InMemoryRateLimiter()
        with patch("app.core.rate_limit.time.time", return_value=1000.0):
            assert limiter.is_allowed("device:a", "update-check", 1, 60) is True
            assert limiter.is_allowed("device:a", "update-check", 1, 60) is False
        with patch("app.core.rate_limit.time.time", return_value=1061.0):
            assert limiter.is_allowed("device:a", "update-check", 1, 60) is True

    def test_remaining_count(self):
        limiter = InMemoryRateLimiter()
        limiter.is_allowed("device:a", "update-check", 5, 60)
        limiter.is_allowed("device:a", "update-check", 5, 60)
        assert limiter.get_remaining_count("device:a", "update-check", 5, 60) == 3

    def test_reset(self):
        limiter = InMemoryRateLimiter()
        limiter.is_allowed("device:a", "update-check", 1, 60)
        limiter.reset()
        assert limiter.is_allowed("device:a", "update-check", 1, 60) is True

    def test_global_instance(self):
        assert get_rate_limiter() is get_rate_limiter()


class TestParseRate:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("120/minute", (120, 60)),
            ("5/second", (5, 1)),
            (" 1000 / hour ", (1000, 3600)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_rate(value) == expected

    @pytest.mark.parametrize("value", ["", "fast", "10/day", "-1/minute"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_rate(value)


class TestBucketSelection:
    def _middleware(self) -> RateLimitMiddleware:
        return RateLimitMiddleware(
            MagicMock(), limiter=InMemoryRateLimiter(), update_check_rate="2/minute"
        )

    @pytest.mark.parametrize(
        "path",
        [
            "/api/v1/update-check",
            "/api/v1/app-version/ios/1.0.0/production/a/b",
            "/api/v1/fingerprint/ios/fp/production/a/b",
        ],
    )
    def test_update_check_paths(self, path):
        assert self._middleware()._get_bucket(path) == ("update-check", (2, 60))

    def test_operator_paths(self):
        assert self._middleware()._get_bucket("/api/v1/bundles/x") == (
            "bundles",
            RateLimitMiddleware.OPERATOR_LIMIT,
        )

    def test_health_not_limited(self):
        assert self._middleware()._get_bucket("/api/v1/health") is None

    def test_identifier_ignores_device_id(self):
        request = MagicMock()
        request.headers = {"x-device-id": "install-1"}
        request.client.host = "10.0.0.1"
        assert self._middleware()._get_identifier(request) == "ip:10.0.0.1"

    def test_identifier_is_client_ip(self):
        request = MagicMock()
        request.headers = {}
        request.client.host = "10.0.0.1"
        assert self._middleware()._get_identifier(request) == "ip:10.0.0.1"


class TestMiddlewareResponses:
    @pytest.fixture
    def limited_client(self):
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware, limiter=InMemoryRateLimiter(), update_check_rate="2/minute"
        )

        @app.get("/api/v1/update-check")
        def update_check():
            return {"status": "UP_TO_DATE"}

        with patch("app.core.config.settings.app_env", AppEnvironment.LOCAL):
            yield TestClient(app)

    def test_blocks_after_limit(self, limited_client):
        headers = {"x-device-id": "install-1"}
        first = limited_client.get("/api/v1/update-check", headers=headers)
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"

        limited_client.get("/api/v1/update-check", headers=headers)
        blocked = limited_client.get("/api/v1/update-check", headers=headers)
        assert blocked.status_code == 429
        assert blocked.headers["Retry-After"] == "60"
        assert blocked.json()["error"] == "RateLimitExceeded"

    def test_rotating_device_ids_do_not_bypass_limit(self, limited_client):
        statuses = [
            limited_client.get(
                "/api/v1/update-check", headers={"x-device-id": f"install-{i}"}
            ).status_code
            for i in range(3)
        ]
        assert statuses == [200, 200, 429]

    def test_test_environment_is_not_limited(self):
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware, limiter=InMemoryRateLimiter(), update_check_rate="1/minute"
        )

        @app.get("/api/v1/update-check")
        def update_check():
            return {}

        client = TestClient(app)
        assert all(
            client.get("/api/v1/update-check").status_code == 200 for _ in range(3)
        )

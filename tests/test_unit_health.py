"""
Unit tests for health check endpoints.

Tests cover:
- Public health endpoints (when HEALTH_TOKEN is not set)
- Bundle store reachability in readyz
- Token-protected health endpoints
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.stores.memory import InMemoryBundleStore
from app.stores.storage import LocalStorage

# ============================================================================
# Tests: Public Health Endpoints (HEALTH_TOKEN not set)
# ============================================================================


@pytest.mark.anyio
async def test_health_ok(client) -> None:
    """Health endpoint returns 200 when no authentication is required."""
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


@pytest.mark.anyio
async def test_readyz_ok_with_store(client) -> None:
    """Readiness endpoint returns 200 when the bundle store answers."""
    resp = client.get("/api/v1/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "store": "ok", "backend": "memory"}


@pytest.mark.anyio
async def test_readyz_reports_unavailable_store() -> None:
    """Readiness endpoint returns 503 when the store ping fails."""
    store = InMemoryBundleStore()
    store.ping = AsyncMock(side_effect=ConnectionError("connection refused"))
    app = create_app(store=store, storage=LocalStorage())

    resp = TestClient(app).get("/api/v1/readyz")

    assert resp.status_code == 503
    body = resp.json()
    assert body == {"ok": False, "store": "unavailable", "backend": "memory"}
    assert "connection refused" not in resp.text


# ============================================================================
# Tests: Protected Health Endpoints (HEALTH_TOKEN set)
# ============================================================================


class TestHealthToken:
    @pytest.fixture(autouse=True)
    def health_token(self):
        with patch("app.api.routes.health.settings.health_token", "health-secret"):
            yield

    def test_missing_token_is_401(self, client):
        assert client.get("/api/v1/health").status_code == 401

    def test_wrong_token_is_403(self, client):
        resp = client.get("/api/v1/readyz", headers={"X-Health-Token": "nope"})
        assert resp.status_code == 403

    def test_correct_token(self, client):
        resp = client.get("/api/v1/health", headers={"X-Health-Token": "health-secret"})
        assert resp.status_code == 200

"""
Pytest configuration and shared fixtures.

Provides:
- Test environment variables (set before the app is imported)
- anyio backend selection
- An in-memory store, a FastAPI app wired to it, and a TestClient

Data factories live in tests/factories.py.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

# Add app to path for imports
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Set test environment variables before importing app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("OBSERVABILITY_STRUCTURED_LOGS", "false")
os.environ.setdefault("BUNDLE_STORE_BACKEND", "memory")
os.environ.setdefault("STORAGE_PUBLIC_BASE_URL", "https://cdn.test.local/bundles")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("METRICS_TOKEN", "test-metrics-token")

import pytest  # noqa: E402 (import after env setup)
from fastapi.testclient import TestClient  # noqa: E402 (import after env setup)

from app.engine.resolver import ResolutionConfig  # noqa: E402
from app.main import create_app  # noqa: E402
from app.stores.memory import InMemoryBundleStore  # noqa: E402
from app.stores.storage import LocalStorage  # noqa: E402
from tests.factories import make_bundle  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def memory_store() -> InMemoryBundleStore:
    return InMemoryBundleStore(
        [
            make_bundle(100, message="first"),
            make_bundle(200, message="second"),
        ]
    )


@pytest.fixture
def storage() -> LocalStorage:
    return LocalStorage(public_base_url="https://cdn.test.local/bundles")


@pytest.fixture
def app(memory_store: InMemoryBundleStore, storage: LocalStorage):
    return create_app(store=memory_store, storage=storage, resolution_config=ResolutionConfig())


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)

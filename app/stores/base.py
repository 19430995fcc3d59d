"""
Contracts consumed by the resolution engine.

BundleStore supplies every bundle record for one platform/channel. Adapters
merge their own pagination (object-store listings are capped at 1000 keys per
page) before returning. Records may be Bundle instances or raw mappings; the
engine parses and validates them.

Storage turns an opaque storageUri into a URL a device can download. A URI
that can never resolve raises MalformedRecordError (not retryable); transient
signing failures raise StoreUnavailableError.

Operator methods (get/update/query) are optional. A backend that cannot
perform them raises UnsupportedOperationError.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID

from app.core.errors import UnsupportedOperationError
from app.domain.bundle import Bundle
from app.domain.enums import Platform

BundleRecord = Bundle | Mapping[str, Any]


class BundleStore(ABC):
    """Read contract over the bundle database."""

    backend_name: str = "unknown"

    @abstractmethod
    async def list_bundles(self, platform: Platform, channel: str) -> Sequence[BundleRecord]:
        """Return every bundle record for the platform/channel, in any order."""

    async def ping(self) -> None:
        """Raise if the backend is unreachable."""
        return None

    async def get_bundle(self, bundle_id: UUID) -> Bundle | None:
        raise UnsupportedOperationError(
            f"{self.backend_name} store does not support bundle lookup by id",
            details={"backend": self.backend_name},
        )

    async def query_bundles(
        self,
        *,
        platform: Platform | None = None,
        channel: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Bundle], int]:
        raise UnsupportedOperationError(
            f"{self.backend_name} store does not support bundle listing",
            details={"backend": self.backend_name},
        )

    async def list_channels(self) -> list[str]:
        raise UnsupportedOperationError(
            f"{self.backend_name} store does not support channel listing",
            details={"backend": self.backend_name},
        )

    async def update_bundle(self, bundle_id: UUID, changes: Mapping[str, Any]) -> Bundle:
        raise UnsupportedOperationError(
            f"{self.backend_name} store is read-only",
            details={"backend": self.backend_name},
        )

    async def close(self) -> None:
        return None


class Storage(ABC):
    """Resolves bundle storage locators to downloadable URLs."""

    backend_name: str = "unknown"

    @abstractmethod
    async def resolve_download_url(self, storage_uri: str) -> str:
        """Return a URL the client can fetch the bundle archive from."""

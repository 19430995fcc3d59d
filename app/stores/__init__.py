"""Bundle store and storage adapters, selected once at startup."""

import logging

from app.core.config import Settings
from app.domain.enums import StorageBackend, StoreBackend
from app.stores.base import BundleStore, Storage
from app.stores.cache import CachedBundleStore
from app.stores.memory import InMemoryBundleStore
from app.stores.storage import LocalStorage

logger = logging.getLogger(__name__)


def build_bundle_store(settings: Settings) -> CachedBundleStore:
    """Create the configured backend wrapped in the read-through cache."""
    inner: BundleStore
    if settings.bundle_store_backend == StoreBackend.S3:
        from app.stores.s3 import S3BundleStore

        inner = S3BundleStore(bucket=settings.s3_bucket_name)
    elif settings.bundle_store_backend == StoreBackend.DATABASE:
        from app.core.db import get_async_sessionmaker
        from app.stores.sql import SQLBundleStore

        inner = SQLBundleStore(get_async_sessionmaker())
    elif settings.bundle_seed_file:
        inner = InMemoryBundleStore.from_json_file(settings.bundle_seed_file)
    else:
        inner = InMemoryBundleStore()

    logger.info(
        f"Bundle store backend: {inner.backend_name}",
        extra={
            "cache_ttl_seconds": settings.bundle_cache_ttl_seconds,
            "timeout_seconds": settings.bundle_store_timeout_seconds,
        },
    )
    return CachedBundleStore(
        inner,
        ttl_seconds=settings.bundle_cache_ttl_seconds,
        timeout_seconds=settings.bundle_store_timeout_seconds,
    )


def build_storage(settings: Settings) -> Storage:
    if settings.storage_backend == StorageBackend.S3:
        from app.stores.s3 import S3Storage

        return S3Storage(expires_in=settings.s3_presign_expires_seconds)
    return LocalStorage(public_base_url=settings.storage_public_base_url)


__all__ = [
    "BundleStore",
    "CachedBundleStore",
    "InMemoryBundleStore",
    "LocalStorage",
    "Storage",
    "build_bundle_store",
    "build_storage",
]

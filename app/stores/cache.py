"""
Read-through cache in front of a BundleStore.

Listings are cached per (platform, channel) for a fixed TTL. The cache dict
is never mutated in place: a refresh builds a new dict and assigns it, so a
reader sees either the old snapshot or the new one. Concurrent misses on the
same key wait on one lock and share a single refresh. Locks are dropped once
no task is waiting on them, and writes prune expired entries and cap the
number of keys, since channel names come from clients.

Invalidation bumps a generation counter. A refresh that started before an
invalidation returns its result but does not cache it.

Every store read is bounded by a timeout. Timeouts and errors raise
StoreUnavailableError and are never cached.
"""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from app.core.errors import HotUpdaterError, StoreUnavailableError
from app.core.observability import metrics
from app.domain.bundle import Bundle
from app.domain.enums import Platform
from app.stores.base import BundleRecord, BundleStore

logger = logging.getLogger(__name__)

CacheKey = tuple[Platform, str]


@dataclass(frozen=True)
class _Entry:
    records: tuple[BundleRecord, ...]
    expires_at: float


class CachedBundleStore(BundleStore):
    def __init__(
        self,
        inner: BundleStore,
        *,
        ttl_seconds: float = 30.0,
        timeout_seconds: float = 5.0,
        clock=time.monotonic,
        max_entries: int = 1024,
    ) -> None:
        self._inner = inner
        self._ttl = ttl_seconds
        self._timeout = timeout_seconds
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._pending: dict[CacheKey, int] = {}
        self._generation = 0
        self._max_entries = max_entries

    @property
    def backend_name(self) -> str:
        return self._inner.backend_name

    @property
    def inner(self) -> BundleStore:
        return self._inner

    async def list_bundles(self, platform: Platform, channel: str) -> Sequence[BundleRecord]:
        key = (platform, channel)

        entry = self._fresh_entry(key)
        if entry is not None:
            metrics.bundle_cache_total.labels(result="hit").inc()
            return entry.records

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._pending[key] = self._pending.get(key, 0) + 1
        try:
            async with lock:
                # Another task may have refreshed while we waited.
                entry = self._fresh_entry(key)
                if entry is not None:
                    metrics.bundle_cache_total.labels(result="hit").inc()
                    return entry.records

                metrics.bundle_cache_total.labels(result="miss").inc()
                generation = self._generation
                records = tuple(
                    await self._bounded(self._inner.list_bundles(platform, channel))
                )

                # An invalidation during the fetch makes this result stale.
                if self._ttl > 0 and generation == self._generation:
                    self._store(key, records)
                return records
        finally:
            self._pending[key] -= 1
            if self._pending[key] == 0:
                del self._pending[key]
                self._locks.pop(key, None)

    def _store(self, key: CacheKey, records: tuple[BundleRecord, ...]) -> None:
        now = self._clock()
        entries = {k: e for k, e in self._entries.items() if e.expires_at > now and k != key}
        if len(entries) >= self._max_entries:
            oldest = sorted(entries, key=lambda k: entries[k].expires_at)
            for stale in oldest[: len(entries) - self._max_entries + 1]:
                del entries[stale]
        entries[key] = _Entry(records=records, expires_at=now + self._ttl)
        self._entries = entries

    def _fresh_entry(self, key: CacheKey) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry

    async def _bounded(self, awaitable):
        backend = self.backend_name
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as e:
            metrics.bundle_store_errors_total.labels(backend=backend, reason="timeout").inc()
            logger.error(
                f"Bundle store read timed out after {self._timeout}s",
                extra={"backend": backend},
            )
            raise StoreUnavailableError(
                "Bundle store timed out",
                details={"backend": backend, "timeout_seconds": self._timeout},
            ) from e
        except HotUpdaterError:
            raise
        except Exception as e:
            metrics.bundle_store_errors_total.labels(backend=backend, reason="error").inc()
            logger.error(f"Bundle store read failed: {e}", extra={"backend": backend})
            raise StoreUnavailableError(
                "Bundle store is unavailable",
                details={"backend": backend, "reason": type(e).__name__},
            ) from e

    def invalidate(self, platform: Platform | None = None, channel: str | None = None) -> int:
        """Drop cached listings matching the filters. Returns the number dropped."""
        keep = {
            key: entry
            for key, entry in self._entries.items()
            if not (
                (platform is None or key[0] is platform) and (channel is None or key[1] == channel)
            )
        }
        dropped = len(self._entries) - len(keep)
        self._entries = keep
        self._generation += 1
        logger.info(
            "Bundle cache invalidated",
            extra={
                "platform": platform.value if platform else None,
                "channel": channel,
                "dropped": dropped,
            },
        )
        return dropped

    async def ping(self) -> None:
        await self._bounded(self._inner.ping())

    async def get_bundle(self, bundle_id: UUID) -> Bundle | None:
        return await self._bounded(self._inner.get_bundle(bundle_id))

    async def query_bundles(self, **filters: Any) -> tuple[list[Bundle], int]:
        return await self._bounded(self._inner.query_bundles(**filters))

    async def list_channels(self) -> list[str]:
        return await self._bounded(self._inner.list_channels())

    async def update_bundle(self, bundle_id: UUID, changes: Mapping[str, Any]) -> Bundle:
        updated = await self._bounded(self._inner.update_bundle(bundle_id, changes))
        self.invalidate(updated.platform, updated.channel)
        return updated

    async def close(self) -> None:
        await self._inner.close()

"""
Update Resolution Engine.

Given a client's platform, channel, current bundle and either an app version
or a fingerprint, decide between UPDATE, ROLLBACK and UP_TO_DATE.

Resolution steps (strictly sequential, each narrows the previous set):
1. Fetch every bundle for platform + channel from the BundleStore
2. Drop bundles below the native-compatibility floor (minBundleId)
3. Drop bundles incompatible under the request's strategy
4. Drop bundles whose staged rollout excludes this device
5. Keep only enabled bundles
6. Pick the highest id and compare it with the current bundle:
   greater -> UPDATE, equal -> UP_TO_DATE, lower -> ROLLBACK
7. Nothing enabled remains -> UP_TO_DATE, or a rollback to the built-in
   bundle when configured to do so

The engine holds no mutable state and performs no writes. Store failures
propagate as StoreUnavailableError and never become UP_TO_DATE.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID

from app.core.errors import (
    IncompatibleClientError,
    MalformedRecordError,
    StoreUnavailableError,
)
from app.core.observability import metrics
from app.domain.bundle import NIL_BUNDLE_ID, Bundle, ClientRequest
from app.domain.enums import UpdateStatus, UpdateStrategy
from app.engine.compatibility import CompatibilityMatcher, coerce_app_version
from app.engine.rollout import RolloutSelector
from app.stores.base import BundleRecord, BundleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionConfig:
    """
    Immutable resolution settings, built once from application settings.

    rollback_to_builtin_when_unrecoverable: when no enabled bundle remains and
    the client runs an OTA bundle above the floor, tell it to return to the
    bundle built into the binary instead of answering UP_TO_DATE.
    """

    rollback_to_builtin_when_unrecoverable: bool = False


@dataclass(frozen=True)
class Decision:
    """
    Outcome of one resolution.

    bundle is None for UP_TO_DATE and for a rollback to the built-in bundle.
    """

    status: UpdateStatus
    bundle: Bundle | None = None
    mandatory: bool = False

    @classmethod
    def no_update(cls) -> "Decision":
        return cls(status=UpdateStatus.UP_TO_DATE)

    @classmethod
    def update(cls, bundle: Bundle) -> "Decision":
        return cls(status=UpdateStatus.UPDATE, bundle=bundle, mandatory=bundle.should_force_update)

    @classmethod
    def rollback(cls, bundle: Bundle) -> "Decision":
        # Rollbacks are always applied immediately.
        return cls(status=UpdateStatus.ROLLBACK, bundle=bundle, mandatory=True)

    @classmethod
    def rollback_to_builtin(cls) -> "Decision":
        return cls(status=UpdateStatus.ROLLBACK, bundle=None, mandatory=True)

    @property
    def bundle_id(self) -> UUID | None:
        if self.bundle is not None:
            return self.bundle.id
        if self.status is UpdateStatus.ROLLBACK:
            return NIL_BUNDLE_ID
        return None


class ResolutionEngine:
    """Orchestrates filtering, ordering, rollback detection and force-update."""

    def __init__(
        self,
        store: BundleStore,
        *,
        matcher: CompatibilityMatcher | None = None,
        selector: RolloutSelector | None = None,
        config: ResolutionConfig | None = None,
    ) -> None:
        self._store = store
        self._matcher = matcher or CompatibilityMatcher()
        self._selector = selector or RolloutSelector()
        self._config = config or ResolutionConfig()

    @property
    def store(self) -> BundleStore:
        return self._store

    async def resolve(self, request: ClientRequest) -> Decision:
        """
        Resolve one client request.

        Raises:
            StoreUnavailableError: If the bundle store cannot be read
            ChannelConfigurationError: If the channel mixes strategies
        """
        if request.strategy is UpdateStrategy.APP_VERSION:
            try:
                coerce_app_version(request.app_version or "")
            except IncompatibleClientError as e:
                logger.warning(
                    f"IncompatibleClientError: {e.message}",
                    extra={
                        "platform": request.platform.value,
                        "channel": request.channel,
                        **e.details,
                    },
                )
                return Decision.no_update()

        # Step 1
        bundles = self._parse_records(await self._fetch(request), request)
        self._matcher.ensure_single_strategy(bundles, request.channel)

        # Step 2
        if request.min_bundle_id is not None:
            bundles = [b for b in bundles if b.id >= request.min_bundle_id]

        # Steps 3-5
        compatible = [b for b in bundles if self._matcher.is_compatible(b, request)]
        included = [b for b in compatible if self._selector.is_included(b, request)]
        enabled = [b for b in included if b.enabled]

        decision = self._decide(enabled, request)

        logger.debug(
            "Resolved update check",
            extra={
                "platform": request.platform.value,
                "channel": request.channel,
                "current_bundle_id": str(request.current_bundle_id or NIL_BUNDLE_ID),
                "candidates": len(bundles),
                "compatible": len(compatible),
                "included": len(included),
                "enabled": len(enabled),
                "status": decision.status.value,
                "selected_bundle_id": str(decision.bundle_id) if decision.bundle_id else None,
            },
        )
        return decision

    def _decide(self, enabled: Sequence[Bundle], request: ClientRequest) -> Decision:
        current = request.current_bundle_id

        if enabled:
            latest = max(enabled, key=lambda b: b.id)
            if current is None or latest.id > current:
                return Decision.update(latest)
            if latest.id == current:
                return Decision.no_update()
            return Decision.rollback(latest)

        if current is None or not self._config.rollback_to_builtin_when_unrecoverable:
            return Decision.no_update()

        # A client at or below the floor already runs the built-in bundle.
        if request.min_bundle_id is not None and current <= request.min_bundle_id:
            return Decision.no_update()

        logger.info(
            "No enabled bundle left for client, rolling back to built-in bundle",
            extra={
                "platform": request.platform.value,
                "channel": request.channel,
                "current_bundle_id": str(current),
            },
        )
        return Decision.rollback_to_builtin()

    async def _fetch(self, request: ClientRequest) -> Sequence[BundleRecord]:
        backend = self._store.backend_name
        start = time.perf_counter()
        try:
            return await self._store.list_bundles(request.platform, request.channel)
        except StoreUnavailableError:
            raise
        except Exception as e:
            metrics.bundle_store_errors_total.labels(backend=backend, reason="error").inc()
            logger.error(
                f"Bundle store read failed: {e}",
                extra={"backend": backend, "channel": request.channel},
            )
            raise StoreUnavailableError(
                "Bundle store is unavailable",
                details={"backend": backend, "reason": type(e).__name__},
            ) from e
        finally:
            metrics.bundle_store_fetch_seconds.labels(backend=backend).observe(
                time.perf_counter() - start
            )

    def _parse_records(
        self, records: Sequence[BundleRecord], request: ClientRequest
    ) -> list[Bundle]:
        bundles: list[Bundle] = []
        for record in records:
            if isinstance(record, Bundle):
                bundle = record
            else:
                try:
                    bundle = Bundle.from_record(record)
                except MalformedRecordError as e:
                    metrics.malformed_bundle_records_total.inc()
                    logger.warning(
                        f"MalformedRecordWarning: {e.message}",
                        extra={"channel": request.channel, **e.details},
                    )
                    continue

            # No cross-platform or cross-channel fallback
            if bundle.platform is not request.platform or bundle.channel != request.channel:
                logger.debug(
                    "Dropping bundle outside requested platform/channel",
                    extra={"bundle_id": str(bundle.id), "channel": bundle.channel},
                )
                continue
            bundles.append(bundle)
        return bundles

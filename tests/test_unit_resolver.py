"""
Unit tests for the resolution engine.

Tests cover:
- Update / rollback / up-to-date decisions
- Floor (minBundleId) enforcement
- Strategy filtering and mixed-strategy channels
- Rollout gating inside resolution
- Store failures and malformed records
- Optional rollback to the built-in bundle
"""

from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from app.core.errors import ChannelConfigurationError, StoreUnavailableError
from app.domain.bundle import NIL_BUNDLE_ID
from app.domain.enums import Platform, UpdateStatus
from app.engine.resolver import Decision, ResolutionConfig, ResolutionEngine
from app.stores.base import BundleStore
from app.stores.memory import InMemoryBundleStore
from tests.factories import bid, make_bundle, make_record, make_request


class RecordStore(BundleStore):
    """Returns raw records as given, counting calls."""

    backend_name = "records"

    def __init__(self, records: Sequence[Mapping[str, Any]]) -> None:
        self.records = list(records)
        self.calls = 0

    async def list_bundles(self, platform: Platform, channel: str):
        self.calls += 1
        return self.records


class FailingStore(BundleStore):
    backend_name = "failing"

    async def list_bundles(self, platform: Platform, channel: str):
        raise ConnectionError("connection refused")


def engine_for(*bundles, **config) -> ResolutionEngine:
    return ResolutionEngine(InMemoryBundleStore(bundles), config=ResolutionConfig(**config))


class TestDecisions:
    @pytest.mark.anyio
    async def test_newer_bundle_is_update(self):
        engine = engine_for(make_bundle(100), make_bundle(200, should_force_update=True))
        decision = await engine.resolve(make_request(current_bundle_id=bid(100)))
        assert decision.status is UpdateStatus.UPDATE
        assert decision.bundle.id == bid(200)
        assert decision.mandatory is True

    @pytest.mark.anyio
    async def test_update_mandatory_follows_selected_bundle(self):
        engine = engine_for(make_bundle(100, should_force_update=True), make_bundle(200))
        decision = await engine.resolve(make_request(current_bundle_id=bid(100)))
        assert decision.status is UpdateStatus.UPDATE
        assert decision.mandatory is False

    @pytest.mark.anyio
    async def test_first_run_gets_latest(self):
        engine = engine_for(make_bundle(100), make_bundle(200))
        decision = await engine.resolve(make_request(current_bundle_id=str(NIL_BUNDLE_ID)))
        assert decision.status is UpdateStatus.UPDATE
        assert decision.bundle.id == bid(200)

    @pytest.mark.anyio
    async def test_current_is_latest_is_up_to_date(self):
        engine = engine_for(make_bundle(100), make_bundle(200))
        decision = await engine.resolve(make_request(current_bundle_id=bid(200)))
        assert decision == Decision.no_update()

    @pytest.mark.anyio
    async def test_disabled_current_rolls_back(self):
        engine = engine_for(make_bundle(100), make_bundle(200, enabled=False))
        decision = await engine.resolve(make_request(current_bundle_id=bid(200)))
        assert decision.status is UpdateStatus.ROLLBACK
        assert decision.bundle.id == bid(100)
        assert decision.mandatory is True

    @pytest.mark.anyio
    async def test_all_disabled_is_up_to_date(self):
        engine = engine_for(make_bundle(100, enabled=False), make_bundle(200, enabled=False))
        decision = await engine.resolve(make_request(current_bundle_id=bid(200)))
        assert decision.status is UpdateStatus.UP_TO_DATE
        assert decision.bundle is None

    @pytest.mark.anyio
    async def test_empty_channel_is_up_to_date(self):
        decision = await engine_for().resolve(make_request(current_bundle_id=bid(5)))
        assert decision.status is UpdateStatus.UP_TO_DATE

    @pytest.mark.anyio
    async def test_latest_wins_regardless_of_store_order(self):
        engine = engine_for(make_bundle(300), make_bundle(100), make_bundle(200))
        decision = await engine.resolve(make_request())
        assert decision.bundle.id == bid(300)

    @pytest.mark.anyio
    async def test_idempotent(self):
        engine = engine_for(make_bundle(100), make_bundle(200, enabled=False))
        request = make_request(current_bundle_id=bid(200))
        assert await engine.resolve(request) == await engine.resolve(request)


class TestFiltering:
    @pytest.mark.anyio
    async def test_floor_excludes_older_bundle(self):
        engine = engine_for(make_bundle(100))
        decision = await engine.resolve(make_request(min_bundle_id=bid(150)))
        assert decision.status is UpdateStatus.UP_TO_DATE

    @pytest.mark.anyio
    async def test_floor_keeps_bundle_equal_to_floor(self):
        engine = engine_for(make_bundle(150))
        decision = await engine.resolve(make_request(min_bundle_id=bid(150)))
        assert decision.bundle.id == bid(150)

    @pytest.mark.anyio
    async def test_incompatible_newer_bundle_ignored(self):
        engine = engine_for(make_bundle(100), make_bundle(200, target_app_version="2.x"))
        decision = await engine.resolve(make_request(current_bundle_id=bid(100)))
        assert decision.status is UpdateStatus.UP_TO_DATE

    @pytest.mark.anyio
    async def test_fingerprint_mismatch_excluded(self):
        engine = engine_for(make_bundle(100, target_app_version=None, fingerprint_hash="abc"))
        decision = await engine.resolve(make_request(app_version=None, fingerprint_hash="xyz"))
        assert decision.status is UpdateStatus.UP_TO_DATE

    @pytest.mark.anyio
    async def test_fingerprint_match_updates(self):
        engine = engine_for(make_bundle(100, target_app_version=None, fingerprint_hash="abc"))
        decision = await engine.resolve(make_request(app_version=None, fingerprint_hash="abc"))
        assert decision.bundle.id == bid(100)

    @pytest.mark.anyio
    async def test_other_channel_and_platform_ignored(self):
        engine = engine_for(
            make_bundle(100),
            make_bundle(200, channel="beta"),
            make_bundle(300, platform=Platform.ANDROID),
        )
        decision = await engine.resolve(make_request())
        assert decision.bundle.id == bid(100)

    @pytest.mark.anyio
    async def test_mixed_strategies_raise(self):
        engine = engine_for(
            make_bundle(100), make_bundle(200, target_app_version=None, fingerprint_hash="fp")
        )
        with pytest.raises(ChannelConfigurationError):
            await engine.resolve(make_request())

    @pytest.mark.anyio
    async def test_rollout_excluded_device_falls_back(self):
        engine = engine_for(
            make_bundle(100),
            make_bundle(200, target_device_ids=("device-a",)),
        )
        excluded = await engine.resolve(make_request(device_identifier="device-b"))
        included = await engine.resolve(make_request(device_identifier="device-a"))
        assert excluded.bundle.id == bid(100)
        assert included.bundle.id == bid(200)


class TestFailureModes:
    @pytest.mark.anyio
    async def test_uncoercible_app_version_is_up_to_date_without_store_read(self):
        store = RecordStore([make_record(100)])
        engine = ResolutionEngine(store)
        decision = await engine.resolve(make_request(app_version="not-a-version"))
        assert decision.status is UpdateStatus.UP_TO_DATE
        assert store.calls == 0

    @pytest.mark.anyio
    async def test_store_error_raises_store_unavailable(self):
        engine = ResolutionEngine(FailingStore())
        with pytest.raises(StoreUnavailableError) as exc_info:
            await engine.resolve(make_request())
        assert exc_info.value.details["backend"] == "failing"

    @pytest.mark.anyio
    async def test_malformed_record_skipped(self, caplog):
        store = RecordStore(
            [
                make_record(100),
                make_record(300, id="garbage"),
                {"id": str(bid(400)), "platform": "ios"},
            ]
        )
        decision = await ResolutionEngine(store).resolve(make_request())
        assert decision.bundle.id == bid(100)
        assert "MalformedRecordWarning" in caplog.text


class TestRollbackToBuiltin:
    @pytest.mark.anyio
    async def test_disabled_everything_rolls_back_to_builtin(self):
        engine = engine_for(
            make_bundle(100, enabled=False),
            make_bundle(200, enabled=False),
            rollback_to_builtin_when_unrecoverable=True,
        )
        decision = await engine.resolve(make_request(current_bundle_id=bid(200)))
        assert decision.status is UpdateStatus.ROLLBACK
        assert decision.bundle is None
        assert decision.bundle_id == NIL_BUNDLE_ID
        assert decision.mandatory is True

    @pytest.mark.anyio
    async def test_builtin_client_stays_up_to_date(self):
        engine = engine_for(rollback_to_builtin_when_unrecoverable=True)
        decision = await engine.resolve(make_request())
        assert decision.status is UpdateStatus.UP_TO_DATE

    @pytest.mark.anyio
    async def test_client_at_floor_stays_up_to_date(self):
        engine = engine_for(rollback_to_builtin_when_unrecoverable=True)
        decision = await engine.resolve(
            make_request(current_bundle_id=bid(150), min_bundle_id=bid(150))
        )
        assert decision.status is UpdateStatus.UP_TO_DATE

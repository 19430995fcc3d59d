"""Unit tests for the in-memory bundle store and its JSON seed loader."""

import json

import pytest

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.domain.enums import Platform
from app.stores.memory import InMemoryBundleStore
from tests.factories import bid, make_bundle, make_record


@pytest.fixture
def store() -> InMemoryBundleStore:
    return InMemoryBundleStore(
        [
            make_bundle(1),
            make_bundle(2, channel="beta"),
            make_bundle(3, platform=Platform.ANDROID),
            make_bundle(4),
        ]
    )


class TestReads:
    @pytest.mark.anyio
    async def test_list_bundles_filters_platform_and_channel(self, store):
        bundles = await store.list_bundles(Platform.IOS, "production")
        assert sorted(b.id for b in bundles) == [bid(1), bid(4)]

    @pytest.mark.anyio
    async def test_query_bundles_newest_first_with_total(self, store):
        items, total = await store.query_bundles(limit=2, offset=0)
        assert total == 4
        assert [b.id for b in items] == [bid(4), bid(3)]

        items, total = await store.query_bundles(channel="production", limit=10, offset=1)
        assert total == 3
        assert [b.id for b in items] == [bid(3), bid(1)]

    @pytest.mark.anyio
    async def test_list_channels(self, store):
        assert await store.list_channels() == ["beta", "production"]

    @pytest.mark.anyio
    async def test_get_bundle(self, store):
        assert (await store.get_bundle(bid(2))).channel == "beta"
        assert await store.get_bundle(bid(99)) is None


class TestUpdates:
    @pytest.mark.anyio
    async def test_update_mutable_fields(self, store):
        updated = await store.update_bundle(bid(1), {"enabled": False, "message": "pulled"})
        assert updated.enabled is False
        assert (await store.get_bundle(bid(1))).message == "pulled"

    @pytest.mark.anyio
    async def test_update_missing_bundle(self, store):
        with pytest.raises(NotFoundError):
            await store.update_bundle(bid(99), {"enabled": False})

    @pytest.mark.anyio
    async def test_update_immutable_field_conflicts(self, store):
        with pytest.raises(ConflictError):
            await store.update_bundle(bid(1), {"file_hash": "other"})

    @pytest.mark.anyio
    async def test_update_invalid_rollout_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.update_bundle(bid(1), {"rollout_percentage": 250})

    @pytest.mark.anyio
    async def test_snapshot_taken_before_write_is_unchanged(self, store):
        snapshot = await store.list_bundles(Platform.IOS, "production")
        await store.update_bundle(bid(1), {"enabled": False})
        assert all(b.enabled for b in snapshot)


class TestSeedFile:
    @pytest.mark.anyio
    async def test_loads_records_and_skips_malformed(self, tmp_path):
        path = tmp_path / "bundles.json"
        path.write_text(json.dumps([make_record(1), make_record(2, id="bad"), {"id": "x"}]))
        store = InMemoryBundleStore.from_json_file(path)
        bundles = await store.list_bundles(Platform.IOS, "production")
        assert [b.id for b in bundles] == [bid(1)]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            InMemoryBundleStore.from_json_file(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bundles.json"
        path.write_text("{not json")
        with pytest.raises(ValidationError):
            InMemoryBundleStore.from_json_file(path)

    def test_not_an_array(self, tmp_path):
        path = tmp_path / "bundles.json"
        path.write_text(json.dumps({"bundles": []}))
        with pytest.raises(ValidationError):
            InMemoryBundleStore.from_json_file(path)

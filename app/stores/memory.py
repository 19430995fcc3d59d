"""In-process bundle store, seeded from a JSON file or a list of records."""

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any
from uuid import UUID

from app.core.errors import ConflictError, MalformedRecordError, NotFoundError, ValidationError
from app.domain.bundle import MUTABLE_FIELDS, Bundle
from app.domain.enums import Platform
from app.stores.base import BundleStore

logger = logging.getLogger(__name__)


class InMemoryBundleStore(BundleStore):
    """
    Bundle store held in a dict keyed by bundle id.

    Writes replace the whole dict so concurrent readers always iterate a
    consistent snapshot.
    """

    backend_name = "memory"

    def __init__(self, bundles: Iterable[Bundle] = ()) -> None:
        self._bundles: dict[UUID, Bundle] = {b.id: b for b in bundles}

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "InMemoryBundleStore":
        """Build a store from raw records, skipping malformed ones."""
        bundles = []
        for record in records:
            try:
                bundles.append(Bundle.from_record(record))
            except MalformedRecordError as e:
                logger.warning(f"MalformedRecordWarning: {e.message}", extra=e.details)
        return cls(bundles)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "InMemoryBundleStore":
        """
        Load a JSON array of bundle records.

        Raises:
            ValidationError: If the file is missing or not a JSON array
        """
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ValidationError("Bundle seed file not found", details={"path": str(path)})
        except ValueError as e:
            raise ValidationError(
                "Bundle seed file is not valid JSON", details={"path": str(path), "error": str(e)}
            )
        if not isinstance(data, list):
            raise ValidationError(
                "Bundle seed file must contain a JSON array", details={"path": str(path)}
            )
        store = cls.from_records(data)
        logger.info(f"Loaded {len(store._bundles)} bundles from {path}")
        return store

    async def list_bundles(self, platform: Platform, channel: str) -> Sequence[Bundle]:
        return [
            b for b in self._bundles.values() if b.platform is platform and b.channel == channel
        ]

    async def get_bundle(self, bundle_id: UUID) -> Bundle | None:
        return self._bundles.get(bundle_id)

    async def query_bundles(
        self,
        *,
        platform: Platform | None = None,
        channel: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Bundle], int]:
        matching = [
            b
            for b in self._bundles.values()
            if (platform is None or b.platform is platform)
            and (channel is None or b.channel == channel)
        ]
        matching.sort(key=lambda b: b.id, reverse=True)
        return matching[offset : offset + limit], len(matching)

    async def list_channels(self) -> list[str]:
        return sorted({b.channel for b in self._bundles.values()})

    async def update_bundle(self, bundle_id: UUID, changes: Mapping[str, Any]) -> Bundle:
        current = self._bundles.get(bundle_id)
        if current is None:
            raise NotFoundError("Bundle not found", details={"bundle_id": str(bundle_id)})

        illegal = set(changes) - MUTABLE_FIELDS
        if illegal:
            raise ConflictError(
                "Bundle fields are immutable once released",
                details={"bundle_id": str(bundle_id), "fields": sorted(illegal)},
            )

        try:
            updated = current.with_changes(**changes)
        except MalformedRecordError as e:
            raise ValidationError(e.message, details=e.details) from e

        bundles = dict(self._bundles)
        bundles[bundle_id] = updated
        self._bundles = bundles
        return updated

    def add(self, bundle: Bundle) -> None:
        bundles = dict(self._bundles)
        bundles[bundle.id] = bundle
        self._bundles = bundles

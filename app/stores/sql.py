"""Database-backed bundle store (SQLAlchemy async)."""

import logging
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.db import session_scope
from app.core.errors import ConflictError, MalformedRecordError, NotFoundError, ValidationError
from app.core.observability import db_metrics
from app.db.models import BundleRow
from app.domain.bundle import MUTABLE_FIELDS, Bundle
from app.domain.enums import Platform
from app.stores.base import BundleRecord, BundleStore

logger = logging.getLogger(__name__)


class SQLBundleStore(BundleStore):
    """
    Bundle store over the bundles table.

    list_bundles returns raw row records so malformed rows are reported by
    the engine like any other malformed record. Operator reads return parsed
    Bundles.
    """

    backend_name = "database"

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def list_bundles(self, platform: Platform, channel: str) -> Sequence[BundleRecord]:
        stmt = select(BundleRow).where(
            BundleRow.platform == platform.value, BundleRow.channel == channel
        )
        async with self._session_maker() as session:
            with db_metrics.track("list_bundles"):
                result = await session.execute(stmt)
            return [row.to_record() for row in result.scalars().all()]

    async def get_bundle(self, bundle_id: UUID) -> Bundle | None:
        async with self._session_maker() as session:
            with db_metrics.track("get_bundle"):
                row = await session.get(BundleRow, bundle_id)
            return Bundle.from_record(row.to_record()) if row else None

    async def query_bundles(
        self,
        *,
        platform: Platform | None = None,
        channel: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Bundle], int]:
        stmt = select(BundleRow)
        count_stmt = select(func.count()).select_from(BundleRow)
        if platform is not None:
            stmt = stmt.where(BundleRow.platform == platform.value)
            count_stmt = count_stmt.where(BundleRow.platform == platform.value)
        if channel is not None:
            stmt = stmt.where(BundleRow.channel == channel)
            count_stmt = count_stmt.where(BundleRow.channel == channel)
        stmt = stmt.order_by(BundleRow.id.desc()).limit(limit).offset(offset)

        async with self._session_maker() as session:
            with db_metrics.track("query_bundles"):
                total = (await session.execute(count_stmt)).scalar_one()
                rows = (await session.execute(stmt)).scalars().all()

        bundles = []
        for row in rows:
            try:
                bundles.append(Bundle.from_record(row.to_record()))
            except MalformedRecordError as e:
                logger.warning(f"MalformedRecordWarning: {e.message}", extra=e.details)
        return bundles, int(total)

    async def list_channels(self) -> list[str]:
        stmt = select(BundleRow.channel).distinct().order_by(BundleRow.channel)
        async with self._session_maker() as session:
            with db_metrics.track("list_channels"):
                result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_bundle(self, bundle_id: UUID, changes: Mapping[str, Any]) -> Bundle:
        illegal = set(changes) - MUTABLE_FIELDS
        if illegal:
            raise ConflictError(
                "Bundle fields are immutable once released",
                details={"bundle_id": str(bundle_id), "fields": sorted(illegal)},
            )

        async with session_scope(self._session_maker) as session:
            with db_metrics.track("update_bundle"):
                row = await session.get(BundleRow, bundle_id, with_for_update=True)
            if row is None:
                raise NotFoundError("Bundle not found", details={"bundle_id": str(bundle_id)})

            try:
                updated = Bundle.from_record(row.to_record()).with_changes(**changes)
            except MalformedRecordError as e:
                raise ValidationError(e.message, details=e.details) from e

            row.enabled = updated.enabled
            row.message = updated.message
            row.metadata_ = dict(updated.metadata)
            row.rollout_percentage = updated.rollout_percentage
            row.target_device_ids = (
                list(updated.target_device_ids) if updated.target_device_ids else None
            )

        logger.info(
            "Bundle updated",
            extra={"bundle_id": str(bundle_id), "fields": sorted(changes)},
        )
        return updated

    async def add(self, bundle: Bundle) -> None:
        async with session_scope(self._session_maker) as session:
            session.add(BundleRow.from_bundle(bundle))

    async def ping(self) -> None:
        async with self._session_maker() as session:
            await session.execute(text("SELECT 1"))

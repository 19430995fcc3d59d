"""
SQLAlchemy 2.x ORM models for the update server.

Column names follow the bundles table shared with the release tooling.
Models use the Mapped[] type annotation syntax and mapped_column.
Types are portable so the same model runs on PostgreSQL and SQLite.
"""

import uuid
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.domain.bundle import Bundle


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class BundleRow(Base):
    """
    One released bundle.

    id is a UUIDv7, so ordering by id is ordering by creation time.
    Exactly one of target_app_version / fingerprint_hash is set.
    """

    __tablename__ = "bundles"
    __table_args__ = (
        CheckConstraint("platform IN ('ios','android')", name="chk_bundles_platform"),
        CheckConstraint(
            "rollout_percentage >= 0 AND rollout_percentage <= 100",
            name="chk_bundles_rollout_percentage",
        ),
        CheckConstraint(
            "(target_app_version IS NULL) <> (fingerprint_hash IS NULL)",
            name="chk_bundles_single_strategy",
        ),
        Index("ix_bundles_platform_channel", "platform", "channel"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    platform: Mapped[str] = mapped_column(Text, nullable=False)
    channel: Mapped[str] = mapped_column(Text, nullable=False, default="production")
    file_hash: Mapped[str] = mapped_column(Text, nullable=False)
    storage_uri: Mapped[str] = mapped_column(Text, nullable=False)
    target_app_version: Mapped[str | None] = mapped_column(Text, nullable=True)
    fingerprint_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    should_force_update: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    git_commit_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    rollout_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    target_device_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_record(self) -> dict[str, Any]:
        """Raw snake_case record for Bundle.from_record()."""
        return {
            "id": self.id,
            "platform": self.platform,
            "channel": self.channel,
            "file_hash": self.file_hash,
            "storage_uri": self.storage_uri,
            "target_app_version": self.target_app_version,
            "fingerprint_hash": self.fingerprint_hash,
            "should_force_update": self.should_force_update,
            "enabled": self.enabled,
            "message": self.message,
            "git_commit_hash": self.git_commit_hash,
            "metadata": self.metadata_,
            "rollout_percentage": self.rollout_percentage,
            "target_device_ids": self.target_device_ids,
            "signature": self.signature,
        }

    @classmethod
    def from_bundle(cls, bundle: Bundle) -> "BundleRow":
        return cls(
            id=bundle.id,
            platform=bundle.platform.value,
            channel=bundle.channel,
            file_hash=bundle.file_hash,
            storage_uri=bundle.storage_uri,
            target_app_version=bundle.target_app_version,
            fingerprint_hash=bundle.fingerprint_hash,
            should_force_update=bundle.should_force_update,
            enabled=bundle.enabled,
            message=bundle.message,
            git_commit_hash=bundle.git_commit_hash,
            metadata_=dict(bundle.metadata),
            rollout_percentage=bundle.rollout_percentage,
            target_device_ids=list(bundle.target_device_ids) if bundle.target_device_ids else None,
            signature=bundle.signature,
        )

    def __repr__(self) -> str:
        return f"<BundleRow(id={self.id}, platform={self.platform}, channel={self.channel})>"


__all__ = ["Base", "BundleRow"]

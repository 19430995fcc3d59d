"""
Bundle and client request value types.

A Bundle is a released JavaScript artifact. Its id is a UUIDv7, and the
128-bit integer value of that UUID is the ordering key for "latest": a larger
id was created later. Ordering never relies on string comparison.

Records arrive from stores in two spellings: camelCase (object-store JSON,
wire format) and snake_case (database rows). Both are accepted.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from app.core.errors import MalformedRecordError, ValidationError
from app.domain.enums import Platform, UpdateStrategy

# Identifies the bundle compiled into the native binary ("no OTA applied").
NIL_BUNDLE_ID = uuid.UUID(int=0)

FULL_ROLLOUT = 100

# Fields an operator may change after a bundle has shipped.
MUTABLE_FIELDS = frozenset(
    {"enabled", "message", "metadata", "rollout_percentage", "target_device_ids"}
)


def parse_bundle_id(value: str | uuid.UUID, field_name: str = "bundle_id") -> uuid.UUID:
    """
    Parse a bundle id into a comparable UUID.

    Raises:
        ValidationError: If the value is not a UUID
    """
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(
            f"{field_name} must be a UUID",
            details={"field": field_name, "value": str(value)[:64]},
        )


def _pick(record: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in record:
        return record[camel]
    return record.get(snake, default)


def _parse_target_device_ids(value: Any) -> tuple[str, ...] | None:
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if isinstance(value, list | tuple):
        ids = tuple(v for v in value if isinstance(v, str))
        return ids or None
    return None


def _parse_rollout_percentage(value: Any) -> int:
    if value is None:
        return FULL_ROLLOUT
    if isinstance(value, bool):
        raise MalformedRecordError("rolloutPercentage must be a number")
    try:
        percentage = int(value)
    except (TypeError, ValueError):
        raise MalformedRecordError("rolloutPercentage must be a number")
    if not 0 <= percentage <= 100:
        raise MalformedRecordError(
            "rolloutPercentage must be between 0 and 100",
            details={"rollout_percentage": percentage},
        )
    return percentage


@dataclass(frozen=True)
class Bundle:
    """
    Immutable release artifact record.

    Only enabled, message, metadata and the rollout fields change after
    creation, and they change by producing a new Bundle via with_changes().
    """

    id: uuid.UUID
    platform: Platform
    channel: str
    file_hash: str
    storage_uri: str
    target_app_version: str | None = None
    fingerprint_hash: str | None = None
    should_force_update: bool = False
    enabled: bool = True
    message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    rollout_percentage: int = FULL_ROLLOUT
    target_device_ids: tuple[str, ...] | None = None
    git_commit_hash: str | None = None
    signature: str | None = None

    @property
    def strategy(self) -> UpdateStrategy:
        if self.fingerprint_hash is not None:
            return UpdateStrategy.FINGERPRINT
        return UpdateStrategy.APP_VERSION

    @property
    def is_partial_rollout(self) -> bool:
        return bool(self.target_device_ids) or self.rollout_percentage < FULL_ROLLOUT

    def with_changes(self, **changes: Any) -> Bundle:
        """Return a copy with mutable fields replaced."""
        illegal = set(changes) - MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"Immutable bundle fields cannot change: {sorted(illegal)}")
        if "target_device_ids" in changes:
            changes["target_device_ids"] = _parse_target_device_ids(
                changes["target_device_ids"]
            )
        if "rollout_percentage" in changes:
            changes["rollout_percentage"] = _parse_rollout_percentage(
                changes["rollout_percentage"]
            )
        return replace(self, **changes)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Bundle:
        """
        Build a Bundle from a raw store record.

        Raises:
            MalformedRecordError: If a required field is missing or invalid
        """
        if not isinstance(record, Mapping):
            raise MalformedRecordError("Bundle record must be a mapping")

        missing = [
            name
            for name, value in (
                ("id", record.get("id")),
                ("platform", record.get("platform")),
                ("channel", record.get("channel")),
                ("fileHash", _pick(record, "fileHash", "file_hash")),
                ("storageUri", _pick(record, "storageUri", "storage_uri")),
            )
            if value in (None, "")
        ]
        if missing:
            raise MalformedRecordError(
                "Bundle record is missing required fields",
                details={"id": record.get("id"), "missing": missing},
            )

        try:
            bundle_id = parse_bundle_id(record["id"], "id")
        except ValidationError as e:
            raise MalformedRecordError(e.message, details=e.details) from e

        try:
            platform = Platform(str(record["platform"]).lower())
        except ValueError:
            raise MalformedRecordError(
                "Bundle record has an unknown platform",
                details={"id": str(bundle_id), "platform": record["platform"]},
            )

        target_app_version = _pick(record, "targetAppVersion", "target_app_version") or None
        fingerprint_hash = _pick(record, "fingerprintHash", "fingerprint_hash") or None
        if (target_app_version is None) == (fingerprint_hash is None):
            raise MalformedRecordError(
                "Bundle record must carry exactly one of targetAppVersion or fingerprintHash",
                details={"id": str(bundle_id)},
            )

        metadata = record.get("metadata") or {}
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                raise MalformedRecordError(
                    "Bundle metadata is not valid JSON", details={"id": str(bundle_id)}
                )
        if not isinstance(metadata, dict):
            raise MalformedRecordError(
                "Bundle metadata must be an object", details={"id": str(bundle_id)}
            )

        try:
            rollout_percentage = _parse_rollout_percentage(
                _pick(record, "rolloutPercentage", "rollout_percentage")
            )
        except MalformedRecordError as e:
            e.details["id"] = str(bundle_id)
            raise

        return cls(
            id=bundle_id,
            platform=platform,
            channel=str(record["channel"]),
            file_hash=str(_pick(record, "fileHash", "file_hash")),
            storage_uri=str(_pick(record, "storageUri", "storage_uri")),
            target_app_version=target_app_version,
            fingerprint_hash=fingerprint_hash,
            should_force_update=bool(
                _pick(record, "shouldForceUpdate", "should_force_update", False)
            ),
            enabled=bool(record.get("enabled", True)),
            message=record.get("message"),
            metadata=dict(metadata),
            rollout_percentage=rollout_percentage,
            target_device_ids=_parse_target_device_ids(
                _pick(record, "targetDeviceIds", "target_device_ids")
            ),
            git_commit_hash=_pick(record, "gitCommitHash", "git_commit_hash"),
            signature=record.get("signature"),
        )

    def to_record(self) -> dict[str, Any]:
        """Serialize to the camelCase record format used by object stores."""
        return {
            "id": str(self.id),
            "platform": self.platform.value,
            "channel": self.channel,
            "fileHash": self.file_hash,
            "storageUri": self.storage_uri,
            "targetAppVersion": self.target_app_version,
            "fingerprintHash": self.fingerprint_hash,
            "shouldForceUpdate": self.should_force_update,
            "enabled": self.enabled,
            "message": self.message,
            "metadata": dict(self.metadata),
            "rolloutPercentage": self.rollout_percentage,
            "targetDeviceIds": list(self.target_device_ids) if self.target_device_ids else None,
            "gitCommitHash": self.git_commit_hash,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class ClientRequest:
    """One update check from a device."""

    platform: Platform
    channel: str
    current_bundle_id: uuid.UUID | None = None
    app_version: str | None = None
    fingerprint_hash: str | None = None
    min_bundle_id: uuid.UUID | None = None
    device_identifier: str | None = None

    @property
    def strategy(self) -> UpdateStrategy:
        if self.fingerprint_hash is not None:
            return UpdateStrategy.FINGERPRINT
        return UpdateStrategy.APP_VERSION

    @classmethod
    def create(
        cls,
        *,
        platform: str | Platform,
        channel: str,
        current_bundle_id: str | uuid.UUID | None = None,
        app_version: str | None = None,
        fingerprint_hash: str | None = None,
        min_bundle_id: str | uuid.UUID | None = None,
        device_identifier: str | None = None,
    ) -> ClientRequest:
        """
        Validate raw request values and build a ClientRequest.

        The NIL bundle id is normalized to None for both the current bundle
        and the floor, since neither constrains anything.

        Raises:
            ValidationError: On unknown platform, bad ids, empty channel, or
                when not exactly one of app_version / fingerprint_hash is set
        """
        app_version = (app_version or "").strip() or None
        fingerprint_hash = (fingerprint_hash or "").strip() or None

        if (app_version is None) == (fingerprint_hash is None):
            raise ValidationError(
                "Exactly one of app version or fingerprint hash must be provided",
                details={
                    "app_version_present": app_version is not None,
                    "fingerprint_hash_present": fingerprint_hash is not None,
                },
            )

        try:
            platform = Platform(str(platform).strip().lower())
        except ValueError:
            raise ValidationError(
                "Unsupported platform",
                details={"platform": str(platform), "valid": [p.value for p in Platform]},
            )

        channel = (channel or "").strip()
        if not channel:
            raise ValidationError("Channel must not be empty", details={"field": "channel"})

        current = None
        if current_bundle_id:
            current = parse_bundle_id(current_bundle_id, "bundle_id")
            if current == NIL_BUNDLE_ID:
                current = None

        floor = None
        if min_bundle_id:
            floor = parse_bundle_id(min_bundle_id, "min_bundle_id")
            if floor == NIL_BUNDLE_ID:
                floor = None

        return cls(
            platform=platform,
            channel=channel,
            current_bundle_id=current,
            app_version=app_version,
            fingerprint_hash=fingerprint_hash,
            min_bundle_id=floor,
            device_identifier=(device_identifier or "").strip() or None,
        )

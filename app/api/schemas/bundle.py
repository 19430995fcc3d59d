"""Pydantic schemas for operator bundle endpoints."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domain.bundle import Bundle


class BundleResponse(BaseModel):
    """Bundle record as shown to operators (camelCase, like the stored records)."""

    id: str
    platform: str
    channel: str
    fileHash: str
    storageUri: str
    targetAppVersion: str | None = None
    fingerprintHash: str | None = None
    shouldForceUpdate: bool
    enabled: bool
    message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    rolloutPercentage: int
    targetDeviceIds: list[str] | None = None
    gitCommitHash: str | None = None
    signature: str | None = None

    @classmethod
    def from_bundle(cls, bundle: Bundle) -> "BundleResponse":
        return cls.model_validate(bundle.to_record())


class BundleListResponse(BaseModel):
    items: list[BundleResponse]
    total: int
    limit: int
    offset: int


class ChannelListResponse(BaseModel):
    channels: list[str]


class BundlePatchRequest(BaseModel):
    """
    Operator changes to a released bundle.

    Only these fields may change. Any other key in the body is rejected by
    the route with 409 (known immutable field) or 400 (unknown field).
    """

    model_config = ConfigDict(extra="allow")

    enabled: bool | None = None
    message: str | None = Field(None, max_length=2000)
    metadata: dict[str, Any] | None = None
    rolloutPercentage: int | None = Field(None, ge=0, le=100)
    targetDeviceIds: list[str] | None = None

    @field_validator("targetDeviceIds")
    @classmethod
    def strip_device_ids(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return [d.strip() for d in v if d and d.strip()]

    def to_changes(self) -> dict[str, Any]:
        """Snake_case changes for the fields present in the body."""
        names = {
            "enabled": "enabled",
            "message": "message",
            "metadata": "metadata",
            "rolloutPercentage": "rollout_percentage",
            "targetDeviceIds": "target_device_ids",
        }
        sent = self.model_fields_set
        return {snake: getattr(self, camel) for camel, snake in names.items() if camel in sent}


class CacheInvalidateResponse(BaseModel):
    invalidated: int

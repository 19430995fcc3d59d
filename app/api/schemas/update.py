"""Pydantic schemas for the update-check response."""

from pydantic import BaseModel, Field

from app.domain.enums import UpdateStatus


class UpdateCheckResponse(BaseModel):
    """
    Update-check payload.

    Serialized with exclude_unset: id and fileUrl are absent for UP_TO_DATE,
    and signature only appears for signed bundles.
    """

    status: UpdateStatus
    id: str | None = Field(None, description="Selected bundle id, NIL id for built-in rollback")
    fileUrl: str | None = Field(None, description="Download URL of the bundle archive")
    fileHash: str | None = None
    shouldForceUpdate: bool = False
    message: str | None = None
    signature: str | None = None

"""
Operator endpoints for inspecting and adjusting released bundles.

All routes require X-Admin-Token. Writes go through the cached store, which
drops the affected channel's cached listing so the next update check sees
the change.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Body, Depends, Query

from app.api.schemas.bundle import (
    BundleListResponse,
    BundlePatchRequest,
    BundleResponse,
    CacheInvalidateResponse,
    ChannelListResponse,
)
from app.core.dependencies import BundleStoreDep, require_admin_token
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.domain.bundle import parse_bundle_id
from app.domain.enums import Platform

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bundles"], dependencies=[Depends(require_admin_token)])

# Wire names of fields fixed at release time.
IMMUTABLE_FIELDS = frozenset(
    {
        "id",
        "platform",
        "channel",
        "fileHash",
        "storageUri",
        "targetAppVersion",
        "fingerprintHash",
        "shouldForceUpdate",
        "gitCommitHash",
        "signature",
    }
)


@router.get("/bundles")
async def list_bundles(
    store: BundleStoreDep,
    platform: Annotated[Platform | None, Query(description="Filter by platform")] = None,
    channel: Annotated[str | None, Query(description="Filter by channel")] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Number of items per page")] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> BundleListResponse:
    """List bundles, newest first."""
    bundles, total = await store.query_bundles(
        platform=platform, channel=channel, limit=limit, offset=offset
    )
    return BundleListResponse(
        items=[BundleResponse.from_bundle(b) for b in bundles],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/bundles/channels")
async def list_channels(store: BundleStoreDep) -> ChannelListResponse:
    return ChannelListResponse(channels=await store.list_channels())


@router.post("/bundles/cache/invalidate")
async def invalidate_cache(
    store: BundleStoreDep,
    platform: Annotated[Platform | None, Query()] = None,
    channel: Annotated[str | None, Query()] = None,
) -> CacheInvalidateResponse:
    """Drop cached bundle listings. Intended as a deploy hook."""
    return CacheInvalidateResponse(invalidated=store.invalidate(platform, channel))


@router.get("/bundles/{bundle_id}")
async def get_bundle(bundle_id: str, store: BundleStoreDep) -> BundleResponse:
    parsed_id = parse_bundle_id(bundle_id)
    bundle = await store.get_bundle(parsed_id)
    if bundle is None:
        raise NotFoundError("Bundle not found", details={"bundle_id": str(parsed_id)})
    return BundleResponse.from_bundle(bundle)


@router.patch("/bundles/{bundle_id}")
async def update_bundle(
    bundle_id: str,
    store: BundleStoreDep,
    payload: Annotated[BundlePatchRequest, Body()],
) -> BundleResponse:
    """Change the mutable fields of a bundle (enabled, message, metadata, rollout)."""
    parsed_id = parse_bundle_id(bundle_id)

    extra = set(payload.model_extra or {})
    immutable = sorted(extra & IMMUTABLE_FIELDS)
    if immutable:
        raise ConflictError(
            "Bundle fields are immutable once released",
            details={"bundle_id": str(parsed_id), "fields": immutable},
        )
    if extra:
        raise ValidationError("Unknown bundle fields", details={"fields": sorted(extra)})

    changes = payload.to_changes()
    if not changes:
        raise ValidationError("No changes provided", details={"bundle_id": str(parsed_id)})

    updated = await store.update_bundle(parsed_id, changes)
    logger.info(
        "Bundle changed by operator",
        extra={
            "bundle_id": str(parsed_id),
            "channel": updated.channel,
            "fields": sorted(changes),
        },
    )
    return BundleResponse.from_bundle(updated)

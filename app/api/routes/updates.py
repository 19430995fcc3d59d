"""
Update-check endpoints polled by devices.

The header form is the primary surface. The path forms carry the same values
in the URL so CDNs can cache responses per client shape.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Header

from app.api.schemas.update import UpdateCheckResponse
from app.core.config import settings
from app.core.dependencies import EngineDep, ResponseBuilderDep
from app.core.errors import ValidationError
from app.core.observability import metrics
from app.core.telemetry import get_tracer
from app.domain.bundle import ClientRequest
from app.engine.resolver import ResolutionEngine
from app.engine.response import ResponseBuilder

logger = logging.getLogger(__name__)

router = APIRouter(tags=["updates"])


async def _check_for_update(
    engine: ResolutionEngine,
    builder: ResponseBuilder,
    *,
    platform: str | None,
    channel: str | None,
    bundle_id: str | None,
    min_bundle_id: str | None,
    app_version: str | None = None,
    fingerprint_hash: str | None = None,
    device_id: str | None = None,
) -> UpdateCheckResponse:
    if not platform:
        raise ValidationError("x-app-platform is required", details={"field": "platform"})

    client_request = ClientRequest.create(
        platform=platform,
        channel=channel or settings.default_channel,
        current_bundle_id=bundle_id,
        app_version=app_version,
        fingerprint_hash=fingerprint_hash,
        min_bundle_id=min_bundle_id,
        device_identifier=device_id,
    )

    with get_tracer().start_as_current_span("resolve_update") as span:
        span.set_attribute("hot_updater.platform", client_request.platform.value)
        span.set_attribute("hot_updater.channel", client_request.channel)
        span.set_attribute("hot_updater.strategy", client_request.strategy.value)
        decision = await engine.resolve(client_request)
        span.set_attribute("hot_updater.status", decision.status.value)

    payload = await builder.build(decision)

    metrics.update_checks_total.labels(
        status=decision.status.value, platform=client_request.platform.value
    ).inc()
    return UpdateCheckResponse(**payload)


@router.get(
    "/update-check",
    response_model=UpdateCheckResponse,
    response_model_exclude_unset=True,
)
async def update_check(
    engine: EngineDep,
    builder: ResponseBuilderDep,
    x_app_platform: Annotated[str | None, Header()] = None,
    x_app_version: Annotated[str | None, Header()] = None,
    x_fingerprint_hash: Annotated[str | None, Header()] = None,
    x_bundle_id: Annotated[str | None, Header()] = None,
    x_min_bundle_id: Annotated[str | None, Header()] = None,
    x_channel: Annotated[str | None, Header()] = None,
    x_stage: Annotated[str | None, Header()] = None,
    x_device_id: Annotated[str | None, Header()] = None,
):
    """Resolve the update for the device described by the request headers."""
    return await _check_for_update(
        engine,
        builder,
        platform=x_app_platform,
        channel=x_channel or x_stage,
        bundle_id=x_bundle_id,
        min_bundle_id=x_min_bundle_id,
        app_version=x_app_version,
        fingerprint_hash=x_fingerprint_hash,
        device_id=x_device_id,
    )


@router.get(
    "/app-version/{platform}/{app_version}/{channel}/{min_bundle_id}/{bundle_id}",
    response_model=UpdateCheckResponse,
    response_model_exclude_unset=True,
)
@router.get(
    "/app-version/{platform}/{app_version}/{channel}/{min_bundle_id}/{bundle_id}/{device_id}",
    response_model=UpdateCheckResponse,
    response_model_exclude_unset=True,
)
async def app_version_update_check(
    engine: EngineDep,
    builder: ResponseBuilderDep,
    platform: str,
    app_version: str,
    channel: str,
    min_bundle_id: str,
    bundle_id: str,
    device_id: str | None = None,
):
    """Path form of the update check for the app-version strategy."""
    return await _check_for_update(
        engine,
        builder,
        platform=platform,
        channel=channel,
        bundle_id=bundle_id,
        min_bundle_id=min_bundle_id,
        app_version=app_version,
        device_id=device_id,
    )


@router.get(
    "/fingerprint/{platform}/{fingerprint_hash}/{channel}/{min_bundle_id}/{bundle_id}",
    response_model=UpdateCheckResponse,
    response_model_exclude_unset=True,
)
@router.get(
    "/fingerprint/{platform}/{fingerprint_hash}/{channel}/{min_bundle_id}/{bundle_id}/{device_id}",
    response_model=UpdateCheckResponse,
    response_model_exclude_unset=True,
)
async def fingerprint_update_check(
    engine: EngineDep,
    builder: ResponseBuilderDep,
    platform: str,
    fingerprint_hash: str,
    channel: str,
    min_bundle_id: str,
    bundle_id: str,
    device_id: str | None = None,
):
    """Path form of the update check for the fingerprint strategy."""
    return await _check_for_update(
        engine,
        builder,
        platform=platform,
        channel=channel,
        bundle_id=bundle_id,
        min_bundle_id=min_bundle_id,
        fingerprint_hash=fingerprint_hash,
        device_id=device_id,
    )

"""
FastAPI dependency injection utilities.

The bundle store, storage resolver, resolution engine and response builder
are created once in create_app() and kept on app.state. Endpoints reach them
through the Annotated aliases below.
"""

import hmac
import logging
from typing import Annotated

from fastapi import Depends, Header, Request

from app.core.config import settings
from app.core.errors import ForbiddenError, UnauthorizedError
from app.engine.resolver import ResolutionEngine
from app.engine.response import ResponseBuilder
from app.stores.cache import CachedBundleStore

logger = logging.getLogger(__name__)


def get_bundle_store(request: Request) -> CachedBundleStore:
    return request.app.state.bundle_store


def get_resolution_engine(request: Request) -> ResolutionEngine:
    return request.app.state.resolution_engine


def get_response_builder(request: Request) -> ResponseBuilder:
    return request.app.state.response_builder


BundleStoreDep = Annotated[CachedBundleStore, Depends(get_bundle_store)]
EngineDep = Annotated[ResolutionEngine, Depends(get_resolution_engine)]
ResponseBuilderDep = Annotated[ResponseBuilder, Depends(get_response_builder)]


def require_admin_token(
    request: Request,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """
    Guard operator endpoints with the X-Admin-Token header.

    The comparison is constant-time. With no ADMIN_TOKEN configured the
    operator API is closed.

    Raises:
        UnauthorizedError: If the header is missing
        ForbiddenError: If the token is wrong or operator access is disabled
    """
    expected_token = settings.admin_token
    if not expected_token:
        logger.error(
            "Operator endpoint accessed but ADMIN_TOKEN not configured",
            extra={"security_event": True, "event_type": "ADMIN_NOT_CONFIGURED"},
        )
        raise ForbiddenError("Operator API is disabled")

    if not x_admin_token:
        raise UnauthorizedError("Admin token required")

    if not hmac.compare_digest(x_admin_token, expected_token):
        logger.warning(
            "Unauthorized operator access attempt",
            extra={
                "security_event": True,
                "event_type": "ADMIN_ACCESS_DENIED",
                "client_ip": request.client.host if request.client else "unknown",
                "path": request.url.path,
            },
        )
        raise ForbiddenError("Invalid admin token")

import hmac
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.dependencies import BundleStoreDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def verify_health_token(x_health_token: Annotated[str | None, Header()] = None) -> None:
    """
    Verify health check token if configured.

    When HEALTH_TOKEN is set, health endpoints require the X-Health-Token
    header. If HEALTH_TOKEN is not set, health endpoints remain public.
    """
    expected_token = settings.health_token
    if expected_token:
        if not x_health_token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Health token required",
            )
        if not hmac.compare_digest(x_health_token, expected_token):
            logger.warning(
                "Unauthorized health check attempt",
                extra={
                    "security_event": True,
                    "event_type": "HEALTH_ACCESS_DENIED",
                },
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid health token",
            )


@router.get("/health", dependencies=[Depends(verify_health_token)])
def health() -> dict:
    """Basic health check endpoint (public unless HEALTH_TOKEN is set)."""
    return {"ok": True}


@router.get("/readyz", dependencies=[Depends(verify_health_token)])
async def readyz(store: BundleStoreDep) -> JSONResponse:
    """Readiness check: verifies the bundle store is reachable.

    Returns:
      - 200 when the store answers
      - 503 when it does not
    """
    try:
        await store.ping()
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"ok": True, "store": "ok", "backend": store.backend_name},
        )
    except Exception as exc:
        logger.error(f"Readiness check failed: {exc}", exc_info=True)
        # Don't expose internal error details to callers
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ok": False, "store": "unavailable", "backend": store.backend_name},
        )

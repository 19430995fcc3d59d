"""
Maps a resolution Decision to the wire payload understood by the client SDK.

Download URLs are resolved through the Storage collaborator only when the
decision carries a bundle, never for UP_TO_DATE.
"""

import logging
from typing import Any

from app.core.errors import MalformedRecordError
from app.core.observability import metrics
from app.domain.bundle import NIL_BUNDLE_ID
from app.domain.enums import UpdateStatus
from app.engine.resolver import Decision
from app.stores.base import Storage

logger = logging.getLogger(__name__)


class ResponseBuilder:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def build(self, decision: Decision) -> dict[str, Any]:
        """
        Build the update-check payload.

        UP_TO_DATE omits id and fileUrl. A rollback to the built-in bundle
        carries the NIL id and a null fileUrl so the client discards its OTA
        bundle.
        """
        if decision.status is UpdateStatus.UP_TO_DATE:
            return {
                "status": decision.status.value,
                "fileHash": None,
                "shouldForceUpdate": False,
                "message": None,
            }

        bundle = decision.bundle
        if bundle is None:
            return {
                "status": decision.status.value,
                "id": str(NIL_BUNDLE_ID),
                "fileUrl": None,
                "fileHash": None,
                "shouldForceUpdate": decision.mandatory,
                "message": None,
            }

        try:
            file_url = await self._storage.resolve_download_url(bundle.storage_uri)
        except MalformedRecordError as e:
            metrics.malformed_bundle_records_total.inc()
            logger.warning(
                f"MalformedRecordWarning: {e.message}",
                extra={"bundle_id": str(bundle.id), "channel": bundle.channel},
            )
            raise

        payload: dict[str, Any] = {
            "status": decision.status.value,
            "id": str(bundle.id),
            "fileUrl": file_url,
            "fileHash": bundle.file_hash,
            "shouldForceUpdate": decision.mandatory,
            "message": bundle.message,
        }
        if bundle.signature:
            payload["signature"] = bundle.signature
        return payload

"""
S3-compatible bundle store and download URL resolver.

Bucket layout (one JSON array of camelCase bundle records per target):

    {channel}/{platform}/{targetAppVersion or fingerprintHash}/update.json

Supports AWS S3 and S3-compatible services like MinIO. boto3 is synchronous,
so every call runs in a worker thread.
"""

import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Any
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.errors import MalformedRecordError, StoreUnavailableError
from app.domain.enums import Platform
from app.stores.base import BundleRecord, BundleStore, Storage

logger = logging.getLogger(__name__)

UPDATE_JSON = "update.json"


def create_s3_client(
    *,
    region: str,
    endpoint_url: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    force_path_style: bool = False,
):
    """Create a boto3 S3 client, path-style for MinIO."""
    config: dict[str, Any] = {
        "service_name": "s3",
        "region_name": region,
    }

    # Endpoint URL for MinIO or non-AWS S3
    if endpoint_url:
        config["endpoint_url"] = endpoint_url

    if access_key_id and secret_access_key:
        config["aws_access_key_id"] = access_key_id
        config["aws_secret_access_key"] = secret_access_key

    if force_path_style:
        config["config"] = Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
        )

    return boto3.client(**config)


def client_from_settings():
    from app.core.config import settings

    return create_s3_client(
        region=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        force_path_style=settings.s3_force_path_style,
    )


class S3BundleStore(BundleStore):
    """
    Read-only bundle store over update.json objects.

    Listings are paginated by S3 at 1000 keys per page; all pages are merged
    here before returning.
    """

    backend_name = "s3"

    def __init__(self, bucket: str, client=None) -> None:
        self._bucket = bucket
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = client_from_settings()
        return self._client

    async def list_bundles(self, platform: Platform, channel: str) -> Sequence[BundleRecord]:
        return await asyncio.to_thread(self._list_bundles_sync, platform, channel)

    def _list_bundles_sync(self, platform: Platform, channel: str) -> list[BundleRecord]:
        client = self._get_client()
        prefix = f"{channel}/{platform.value}/"

        keys: list[str] = []
        paginator = client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                if obj["Key"].endswith(f"/{UPDATE_JSON}"):
                    keys.append(obj["Key"])

        records: list[BundleRecord] = []
        for key in keys:
            records.extend(self._read_update_json(client, key))

        logger.debug(
            f"Loaded {len(records)} bundle records from {len(keys)} objects",
            extra={"bucket": self._bucket, "prefix": prefix},
        )
        return records

    def _read_update_json(self, client, key: str) -> list[BundleRecord]:
        try:
            response = client.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            # Object deleted between listing and read
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                logger.warning(f"update.json disappeared during listing: {key}")
                return []
            raise

        try:
            data = json.loads(response["Body"].read())
        except ValueError:
            logger.warning(
                "MalformedRecordWarning: update.json is not valid JSON",
                extra={"bucket": self._bucket, "key": key},
            )
            return []

        if not isinstance(data, list):
            logger.warning(
                "MalformedRecordWarning: update.json is not a JSON array",
                extra={"bucket": self._bucket, "key": key},
            )
            return []
        return data

    async def ping(self) -> None:
        await asyncio.to_thread(self._get_client().head_bucket, Bucket=self._bucket)


class S3Storage(Storage):
    """Resolves s3://bucket/key storage URIs to presigned GET URLs."""

    backend_name = "s3"

    def __init__(self, client=None, expires_in: int = 3600) -> None:
        self._client = client
        self._expires_in = expires_in

    def _get_client(self):
        if self._client is None:
            self._client = client_from_settings()
        return self._client

    async def resolve_download_url(self, storage_uri: str) -> str:
        parsed = urlparse(storage_uri)
        if parsed.scheme in ("http", "https"):
            return storage_uri
        if parsed.scheme != "s3" or not parsed.netloc or not parsed.path.strip("/"):
            raise MalformedRecordError(
                "Bundle storage URI cannot be resolved",
                details={"storage_uri": storage_uri, "backend": self.backend_name},
            )

        try:
            return await asyncio.to_thread(
                self._get_client().generate_presigned_url,
                "get_object",
                Params={"Bucket": parsed.netloc, "Key": parsed.path.lstrip("/")},
                ExpiresIn=self._expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to presign bundle URL: {e}", extra={"storage_uri": storage_uri})
            raise StoreUnavailableError(
                "Failed to sign bundle download URL",
                details={"backend": self.backend_name, "reason": type(e).__name__},
            ) from e

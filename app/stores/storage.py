"""Download URL resolution for storage URIs that need no signing."""

from urllib.parse import quote, urlparse

from app.core.errors import MalformedRecordError
from app.stores.base import Storage


class LocalStorage(Storage):
    """
    Passes http(s) URIs through and maps everything else onto a public base URL.

    With base URL "https://cdn.example.com/bundles":
        "s3://bucket/abc/bundle.zip"  -> https://cdn.example.com/bundles/abc/bundle.zip
        "file:///srv/abc/bundle.zip"  -> https://cdn.example.com/bundles/srv/abc/bundle.zip
        "abc/bundle.zip"              -> https://cdn.example.com/bundles/abc/bundle.zip
    """

    backend_name = "local"

    def __init__(self, public_base_url: str | None = None) -> None:
        self._base = public_base_url.rstrip("/") if public_base_url else None

    async def resolve_download_url(self, storage_uri: str) -> str:
        parsed = urlparse(storage_uri)
        if parsed.scheme in ("http", "https"):
            return storage_uri

        if self._base is None:
            raise MalformedRecordError(
                "No public base URL configured for non-HTTP storage URI",
                details={"storage_uri": storage_uri, "backend": self.backend_name},
            )

        # The bucket name of s3:// URIs is not part of the public path.
        path = parsed.path if parsed.scheme == "s3" else f"{parsed.netloc}{parsed.path}"
        return f"{self._base}/{quote(path.lstrip('/'))}"

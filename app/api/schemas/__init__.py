"""
Pydantic schemas for API request/response validation.
"""

# Re-export schemas for convenient imports.
from .bundle import BundleListResponse as BundleListResponse
from .bundle import BundlePatchRequest as BundlePatchRequest
from .bundle import BundleResponse as BundleResponse
from .bundle import CacheInvalidateResponse as CacheInvalidateResponse
from .bundle import ChannelListResponse as ChannelListResponse
from .update import UpdateCheckResponse as UpdateCheckResponse

"""Rate limiting middleware for FastAPI application."""

import logging
import re
import time
from collections import defaultdict
from collections.abc import Callable

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# In-memory state is per process. Multiple replicas each enforce their own limit.

_WINDOWS = {"second": 1, "minute": 60, "hour": 3600}
_RATE_PATTERN = re.compile(r"^\s*(\d+)\s*/\s*(second|minute|hour)\s*$")

# Paths served to devices; everything else under /api/v1 is operator traffic.
UPDATE_CHECK_PREFIXES = ("/api/v1/update-check", "/api/v1/app-version/", "/api/v1/fingerprint/")


def parse_rate(value: str) -> tuple[int, int]:
    """
    Parse "<count>/<second|minute|hour>" into (limit, window_seconds).

    Raises:
        ValueError: If the value is not in that form
    """
    match = _RATE_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid rate limit '{value}', expected e.g. '120/minute'")
    return int(match.group(1)), _WINDOWS[match.group(2)]


class InMemoryRateLimiter:
    """Simple in-memory rate limiter using sliding window algorithm."""

    def __init__(self):
        # Key: (identifier, endpoint), Value: list of timestamps
        self._requests: defaultdict[tuple[str, str], list[float]] = defaultdict(list)
        self._cleanup_interval = 300
        self._last_cleanup = time.time()

    def _cleanup_old_entries(self, now: float) -> None:
        """Remove entries older than 1 hour to prevent memory leaks."""
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        cutoff = now - 3600

        keys_to_delete = []
        for key, timestamps in self._requests.items():
            self._requests[key] = [t for t in timestamps if t > cutoff]
            if not self._requests[key]:
                keys_to_delete.append(key)

        for key in keys_to_delete:
            del self._requests[key]

        if keys_to_delete:
            logger.debug(f"Cleaned up {len(keys_to_delete)} expired rate limit entries")

    def is_allowed(self, identifier: str, endpoint: str, limit: int, window: int) -> bool:
        """
        Check if request is allowed under rate limit.

        Args:
            identifier: Unique identifier (device id or IP)
            endpoint: Rate limit bucket name
            limit: Max requests allowed
            window: Time window in seconds

        Returns:
            True if request is allowed, False otherwise
        """
        now = time.time()
        self._cleanup_old_entries(now)

        key = (identifier, endpoint)
        recent_requests = [t for t in self._requests[key] if t > now - window]

        if len(recent_requests) >= limit:
            return False

        recent_requests.append(now)
        self._requests[key] = recent_requests
        return True

    def get_remaining_count(self, identifier: str, endpoint: str, limit: int, window: int) -> int:
        now = time.time()
        timestamps = self._requests[(identifier, endpoint)]
        recent_count = len([t for t in timestamps if t > now - window])
        return max(0, limit - recent_count)

    def reset(self) -> None:
        """
        Reset all rate limit state.

        Used primarily in tests to clear rate limiting between test cases.
        """
        self._requests.clear()
        self._last_cleanup = time.time()


# Global rate limiter instance
_rate_limiter = InMemoryRateLimiter()


def get_rate_limiter() -> InMemoryRateLimiter:
    """Get the global rate limiter instance."""
    return _rate_limiter


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting middleware for FastAPI.

    Requests are keyed by client IP. The device id header is client supplied
    and unauthenticated, so it never selects the bucket. Operator endpoints
    get a fixed per-IP budget.
    """

    OPERATOR_LIMIT = (100, 60)

    def __init__(
        self,
        app,
        limiter: InMemoryRateLimiter | None = None,
        update_check_rate: str | None = None,
    ):
        super().__init__(app)
        self.limiter = limiter or get_rate_limiter()
        if update_check_rate is None:
            from app.core.config import settings

            update_check_rate = settings.rate_limit_update_check
        self.update_check_limit = parse_rate(update_check_rate)

    def _get_bucket(self, path: str) -> tuple[str, tuple[int, int]] | None:
        if path.startswith(UPDATE_CHECK_PREFIXES):
            return "update-check", self.update_check_limit
        if path.startswith("/api/v1/bundles"):
            return "bundles", self.OPERATOR_LIMIT
        return None

    def _get_identifier(self, request: Request) -> str:
        client_host = request.client.host if request.client else "unknown"
        return f"ip:{client_host}"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        from app.core.config import AppEnvironment, settings

        # Tests simulate controlled scenarios and should not be rate limited
        if settings.app_env == AppEnvironment.TEST:
            return await call_next(request)

        bucket = self._get_bucket(request.url.path)
        if bucket is None:
            return await call_next(request)

        endpoint, (limit, window) = bucket
        identifier = self._get_identifier(request)

        if not self.limiter.is_allowed(identifier, endpoint, limit, window):
            logger.warning(
                f"Rate limit exceeded for {identifier} on {request.method} {request.url.path}",
                extra={
                    "identifier": identifier,
                    "bucket": endpoint,
                    "limit": limit,
                    "window": window,
                },
            )
            response = Response(
                content=f'{{"error":"RateLimitExceeded","message":"Rate limit exceeded","limit":{limit},"window":{window}}}',
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                media_type="application/json",
            )
            response.headers["Retry-After"] = str(window)
            response.headers["X-RateLimit-Limit"] = str(limit)
            response.headers["X-RateLimit-Remaining"] = "0"
            return response

        remaining = self.limiter.get_remaining_count(identifier, endpoint, limit, window)
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

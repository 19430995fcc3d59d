"""
Domain-specific exceptions for the update server.

These exceptions represent request and configuration problems and are mapped
to appropriate HTTP status codes in the API layer.
"""

from typing import Any


class HotUpdaterError(Exception):
    """Base exception for all update server domain errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(HotUpdaterError):
    """
    Raised when a request fails validation.

    Examples:
    - Both or neither of x-app-version / x-fingerprint-hash present
    - Unknown platform
    - Bundle id that is not a UUID

    HTTP Status: 400 Bad Request
    """

    pass


class NotFoundError(HotUpdaterError):
    """
    Raised when a requested bundle does not exist.

    HTTP Status: 404 Not Found
    """

    pass


class UnauthorizedError(HotUpdaterError):
    """
    Raised when an operator endpoint is called without a token.

    HTTP Status: 401 Unauthorized
    """

    pass


class ForbiddenError(HotUpdaterError):
    """
    Raised when an operator token is present but wrong.

    HTTP Status: 403 Forbidden
    """

    pass


class ConflictError(HotUpdaterError):
    """
    Raised when an update conflicts with bundle immutability.

    Examples:
    - Attempting to change storageUri or fileHash of a shipped bundle

    HTTP Status: 409 Conflict
    """

    pass


class UnsupportedOperationError(HotUpdaterError):
    """
    Raised when the configured bundle store cannot perform an operation.

    Examples:
    - PATCH on a read-only object-store listing

    HTTP Status: 501 Not Implemented
    """

    pass


class StoreUnavailableError(HotUpdaterError):
    """
    Raised when the bundle store read times out or errors.

    Never converted to "no update": an outage must not look like an
    up-to-date client. Callers should retry with backoff.

    HTTP Status: 503 Service Unavailable
    """

    pass


class ChannelConfigurationError(HotUpdaterError):
    """
    Raised when a channel mixes app-version and fingerprint bundles.

    HTTP Status: 500 Internal Server Error
    """

    pass


class IncompatibleClientError(HotUpdaterError):
    """
    Raised when a client app version cannot be coerced to a semantic version.

    Internal only. The resolver converts it into an up-to-date answer.
    """

    pass


class MalformedRecordError(HotUpdaterError):
    """
    Raised when a single bundle record cannot be parsed.

    Internal only. The record is skipped with a MalformedRecordWarning log.
    """

    pass


# HTTP Status Code Mapping
ERROR_STATUS_MAP = {
    ValidationError: 400,
    UnauthorizedError: 401,
    ForbiddenError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    ChannelConfigurationError: 500,
    UnsupportedOperationError: 501,
    StoreUnavailableError: 503,
}


def get_status_code(error: Exception) -> int:
    """
    Get the HTTP status code for a given exception.

    Args:
        error: The exception instance

    Returns:
        HTTP status code (defaults to 500 for unknown errors)
    """
    return ERROR_STATUS_MAP.get(type(error), 500)

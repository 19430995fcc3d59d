"""
Domain enums for the update server.

These enums provide type-safe representations of the values exchanged with
React Native clients and stored on bundle records.
"""

from enum import Enum


class Platform(str, Enum):
    """Native platform a bundle was built for."""

    IOS = "ios"
    ANDROID = "android"


class UpdateStrategy(str, Enum):
    """
    Compatibility strategy used by a client (and by every bundle of a channel).

    APP_VERSION matches a semantic app version against a bundle's target range.
    FINGERPRINT matches an opaque native build hash exactly.
    """

    APP_VERSION = "appVersion"
    FINGERPRINT = "fingerprint"


class UpdateStatus(str, Enum):
    """
    Wire status returned by the update check.
    Must match the values understood by the client SDK.
    """

    UPDATE = "UPDATE"
    ROLLBACK = "ROLLBACK"
    UP_TO_DATE = "UP_TO_DATE"


class StoreBackend(str, Enum):
    """Bundle listing backends selectable at configuration time."""

    MEMORY = "memory"
    S3 = "s3"
    DATABASE = "database"


class StorageBackend(str, Enum):
    """Download URL resolvers selectable at configuration time."""

    LOCAL = "local"
    S3 = "s3"

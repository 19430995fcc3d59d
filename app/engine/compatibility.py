"""
Bundle/client compatibility under the two update strategies.

App-version strategy: the client's version is coerced to a concrete semantic
version ("1.2" -> 1.2.0) and tested against the bundle's npm-style range
("1.x", "^1.2.3", "~1.2.3", "1.2.3 - 1.2.7", ">=1.0.0 <2.0.0", "*").
An uncoercible client version is never compatible.

Fingerprint strategy: exact string equality of the native build hash.
"""

import logging
import re
from collections.abc import Iterable
from functools import lru_cache

import semantic_version

from app.core.errors import ChannelConfigurationError, IncompatibleClientError
from app.domain.bundle import Bundle, ClientRequest
from app.domain.enums import UpdateStrategy

logger = logging.getLogger(__name__)

# ">= 5.7.0 <= 5.7.4" -> ">=5.7.0 <=5.7.4"
_OPERATOR_SPACE = re.compile(r"([><=~^]+)\s+(\d)")
_LEADING_V = re.compile(r"^[vV=]\s*")


def normalize_target_range(target: str) -> str:
    """Collapse whitespace inside comparators, keep one space between them."""
    normalized = " ".join(target.split())
    return _OPERATOR_SPACE.sub(r"\1\2", normalized)


@lru_cache(maxsize=1024)
def _parse_range(target: str) -> semantic_version.NpmSpec | None:
    try:
        return semantic_version.NpmSpec(normalize_target_range(target))
    except ValueError:
        return None


@lru_cache(maxsize=4096)
def coerce_app_version(app_version: str) -> semantic_version.Version:
    """
    Coerce a client app version string into a concrete semantic version.

    Build metadata is dropped; prerelease tags are kept.

    Raises:
        IncompatibleClientError: If the value has no leading numeric version
    """
    candidate = _LEADING_V.sub("", app_version.strip())
    try:
        version = semantic_version.Version.coerce(candidate)
    except ValueError:
        raise IncompatibleClientError(
            "App version cannot be parsed as a semantic version",
            details={"app_version": app_version[:64]},
        )
    return version.truncate("prerelease")


class CompatibilityMatcher:
    """Decides per bundle whether it can run on the requesting client."""

    def is_compatible(self, bundle: Bundle, request: ClientRequest) -> bool:
        """
        Check one bundle against one request.

        Strategies never cross: an app-version bundle is never compatible with
        a fingerprint request and vice versa.
        """
        if bundle.strategy is not request.strategy:
            return False

        if request.strategy is UpdateStrategy.FINGERPRINT:
            return bundle.fingerprint_hash == request.fingerprint_hash

        try:
            version = coerce_app_version(request.app_version or "")
        except IncompatibleClientError:
            return False

        spec = _parse_range(bundle.target_app_version or "")
        if spec is None:
            logger.warning(
                "MalformedRecordWarning: unparsable targetAppVersion, bundle skipped",
                extra={
                    "bundle_id": str(bundle.id),
                    "target_app_version": bundle.target_app_version,
                },
            )
            return False
        return spec.match(version)

    def ensure_single_strategy(self, bundles: Iterable[Bundle], channel: str) -> None:
        """
        Reject channels whose bundles mix strategies.

        Raises:
            ChannelConfigurationError: If both app-version and fingerprint
                bundles are present
        """
        strategies = {bundle.strategy for bundle in bundles}
        if len(strategies) > 1:
            raise ChannelConfigurationError(
                f"Channel '{channel}' mixes app-version and fingerprint bundles",
                details={
                    "channel": channel,
                    "strategies": sorted(s.value for s in strategies),
                },
            )

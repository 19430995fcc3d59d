"""
Staged rollout gating.

A device's position in a bundle's rollout is a pure function of
(bundle id, device identifier): SHA-256 over "<bundle id>:<device id>", first
8 bytes as an unsigned integer, scaled into [0, 100) in steps of 0.01. The device is included
iff that value is strictly below the bundle's rolloutPercentage. Repeated
polls and process restarts always give the same answer.
"""

import hashlib

from app.domain.bundle import FULL_ROLLOUT, Bundle, ClientRequest

_HASH_SPACE = 2**64


def rollout_position(bundle_id: str, device_identifier: str) -> float:
    """Stable fractional position of a device within a bundle's rollout, in [0, 100)."""
    digest = hashlib.sha256(f"{bundle_id}:{device_identifier}".encode()).digest()
    bucket = int.from_bytes(digest[:8], "big")
    # Integer division keeps the top bucket strictly below 100.
    return bucket * 10_000 // _HASH_SPACE / 100


class RolloutSelector:
    """Applies rollout percentage and explicit device targeting."""

    def is_included(self, bundle: Bundle, request: ClientRequest) -> bool:
        """
        Decide whether the requesting device may receive this bundle.

        An explicit targetDeviceIds list overrides the percentage. Devices that
        send no identifier are left out of every partial rollout.
        """
        if not bundle.is_partial_rollout:
            return True

        device = request.device_identifier
        if not device:
            return False

        if bundle.target_device_ids:
            return device in bundle.target_device_ids

        if bundle.rollout_percentage <= 0:
            return False
        if bundle.rollout_percentage >= FULL_ROLLOUT:
            return True

        return rollout_position(str(bundle.id), device) < bundle.rollout_percentage

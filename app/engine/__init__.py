"""Update resolution engine."""

from app.engine.compatibility import (
    CompatibilityMatcher,
    coerce_app_version,
    normalize_target_range,
)
from app.engine.resolver import Decision, ResolutionConfig, ResolutionEngine
from app.engine.response import ResponseBuilder
from app.engine.rollout import RolloutSelector, rollout_position

__all__ = [
    "CompatibilityMatcher",
    "Decision",
    "ResolutionConfig",
    "ResolutionEngine",
    "ResponseBuilder",
    "RolloutSelector",
    "coerce_app_version",
    "normalize_target_range",
    "rollout_position",
]

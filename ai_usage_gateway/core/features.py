"""
Feature configuration registry.

Maps each AI use case to the model and generation parameters it runs
with. The registry is fixed at import time.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Tuple

from .pricing import FAST_MODEL, PRIMARY_MODEL


@dataclass(frozen=True)
class FeatureProfile:
    """Model and parameters for one feature."""
    feature_name: str
    model_id: str
    temperature: float
    max_tokens: int


DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000

# feature -> overrides merged over the defaults above
_FEATURE_OVERRIDES = {
    "enhance-shoutout": {"model_id": FAST_MODEL, "temperature": 0.8, "max_tokens": 500},
    "improve-skill-request": {"model_id": FAST_MODEL, "temperature": 0.7, "max_tokens": 600},
    "generate-bio": {"model_id": FAST_MODEL, "temperature": 0.8, "max_tokens": 300},
    "recognition-starters": {"model_id": FAST_MODEL, "temperature": 0.9, "max_tokens": 400},
    "team-narrative": {"model_id": PRIMARY_MODEL, "max_tokens": 1500},
    "gap-recommendations": {"model_id": PRIMARY_MODEL, "temperature": 0.6, "max_tokens": 1200},
    "development-insights": {"model_id": PRIMARY_MODEL},
    "executive-summary": {"model_id": PRIMARY_MODEL, "temperature": 0.6, "max_tokens": 2000},
    "partnership-reasoning": {"model_id": FAST_MODEL, "max_tokens": 500},
    "mentorship-guide": {"model_id": PRIMARY_MODEL, "max_tokens": 800},
    "match-skill-request": {"model_id": FAST_MODEL, "temperature": 0.5, "max_tokens": 600},
    "recognition-prompts": {"model_id": FAST_MODEL, "temperature": 0.8, "max_tokens": 400},
    "goal-suggestions": {"model_id": PRIMARY_MODEL, "max_tokens": 800},
    "chat": {"model_id": PRIMARY_MODEL, "max_tokens": 1500},
}

FEATURE_SETTINGS: Mapping[str, Mapping[str, object]] = MappingProxyType({
    name: MappingProxyType(overrides) for name, overrides in _FEATURE_OVERRIDES.items()
})

FEATURES: Tuple[str, ...] = tuple(FEATURE_SETTINGS)


def get_feature_settings(feature: str) -> FeatureProfile:
    """Resolve the profile for a feature.

    Args:
        feature: Feature name from FEATURES

    Returns:
        FeatureProfile with defaults filled in

    Raises:
        ValueError: If feature is not registered
    """
    if feature not in FEATURE_SETTINGS:
        raise ValueError(f"Unknown feature: {feature}")
    overrides = FEATURE_SETTINGS[feature]
    return FeatureProfile(
        feature_name=feature,
        model_id=overrides["model_id"],
        temperature=overrides.get("temperature", DEFAULT_TEMPERATURE),
        max_tokens=overrides.get("max_tokens", DEFAULT_MAX_TOKENS)
    )

"""
Configuration management and loading.

Handles admission ceilings from YAML and provider settings from the
environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class RequestLimits:
    """Request-count ceilings for one kind of principal."""
    per_minute: int
    per_hour: int
    per_day: int

    def __post_init__(self):
        """Validate ceilings are positive."""
        for name in ("per_minute", "per_hour", "per_day"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer")

    def for_granularity(self, granularity: str) -> int:
        """Ceiling for "minute", "hour" or "day"."""
        return getattr(self, f"per_{granularity}")


@dataclass(frozen=True)
class TokenLimits:
    """Daily token ceilings computed from the usage ledger."""
    per_actor_per_day: int
    per_group_per_day: int

    def __post_init__(self):
        """Validate ceilings are positive."""
        for name in ("per_actor_per_day", "per_group_per_day"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer")


DEFAULT_ACTOR_LIMITS = RequestLimits(per_minute=10, per_hour=100, per_day=500)
DEFAULT_GROUP_LIMITS = RequestLimits(per_minute=50, per_hour=500, per_day=5000)
DEFAULT_TOKEN_LIMITS = TokenLimits(per_actor_per_day=100_000, per_group_per_day=1_000_000)
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


@dataclass(frozen=True)
class GatewayConfig:
    """Complete admission configuration."""
    actor_limits: RequestLimits = DEFAULT_ACTOR_LIMITS
    group_limits: RequestLimits = DEFAULT_GROUP_LIMITS
    token_limits: TokenLimits = DEFAULT_TOKEN_LIMITS
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS

    def __post_init__(self):
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")

    def as_dict(self) -> Dict[str, Any]:
        """Plain mapping of the limits, for reports."""
        return {
            "rate_limits": {
                "actor": vars(self.actor_limits).copy(),
                "group": vars(self.group_limits).copy(),
            },
            "token_limits": vars(self.token_limits).copy(),
            "sweep_interval_seconds": self.sweep_interval_seconds,
        }


@dataclass(frozen=True)
class ProviderSettings:
    """Model provider credentials read from the environment."""
    api_key: Optional[str] = field(default=None, repr=False)
    organization: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


def load_provider_settings(environ: Optional[Dict[str, str]] = None) -> ProviderSettings:
    """Read OPENAI_API_KEY and OPENAI_ORG_ID."""
    env = os.environ if environ is None else environ
    return ProviderSettings(
        api_key=env.get("OPENAI_API_KEY") or None,
        organization=env.get("OPENAI_ORG_ID") or None
    )


def load_gateway_config(path: str) -> GatewayConfig:
    """Load and validate admission configuration from a YAML file.

    Sections left out of the file keep their defaults. Unknown keys are
    rejected so a typo cannot silently fall back to a default ceiling.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'rate_limits', 'token_limits', 'sweep_interval_seconds'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    rate_limits = raw_config.get('rate_limits', {})
    if not isinstance(rate_limits, dict):
        raise ValueError("'rate_limits' must be a dictionary")
    unknown_principals = set(rate_limits.keys()) - {'actor', 'group'}
    if unknown_principals:
        raise ValueError(f"Unknown rate_limits keys: {unknown_principals}")

    actor_limits = _parse_request_limits(
        rate_limits.get('actor'), DEFAULT_ACTOR_LIMITS, "rate_limits.actor"
    )
    group_limits = _parse_request_limits(
        rate_limits.get('group'), DEFAULT_GROUP_LIMITS, "rate_limits.group"
    )
    token_limits = _parse_token_limits(raw_config.get('token_limits'))

    sweep_interval = raw_config.get('sweep_interval_seconds', DEFAULT_SWEEP_INTERVAL_SECONDS)
    _require_positive_int(sweep_interval, "sweep_interval_seconds")

    return GatewayConfig(
        actor_limits=actor_limits,
        group_limits=group_limits,
        token_limits=token_limits,
        sweep_interval_seconds=sweep_interval
    )


def _parse_request_limits(data: Optional[Dict], defaults: RequestLimits, path: str) -> RequestLimits:
    """Parse request ceilings, filling omitted tiers from defaults.

    Args:
        data: Raw section, or None when absent
        defaults: Ceilings used for omitted tiers
        path: Path for error messages

    Raises:
        ValueError: If configuration is invalid
    """
    if data is None:
        return defaults
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'per_minute', 'per_hour', 'per_day'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key in allowed_keys:
        value = data.get(key, getattr(defaults, key))
        _require_positive_int(value, f"{path}.{key}")
        values[key] = value
    return RequestLimits(**values)


def _parse_token_limits(data: Optional[Dict]) -> TokenLimits:
    if data is None:
        return DEFAULT_TOKEN_LIMITS
    if not isinstance(data, dict):
        raise ValueError("'token_limits' must be a dictionary")

    allowed_keys = {'per_actor_per_day', 'per_group_per_day'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in token_limits: {unknown_keys}")

    values = {}
    for key in allowed_keys:
        value = data.get(key, getattr(DEFAULT_TOKEN_LIMITS, key))
        _require_positive_int(value, f"token_limits.{key}")
        values[key] = value
    return TokenLimits(**values)


def _require_positive_int(value: Any, path: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")

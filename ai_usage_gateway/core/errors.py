"""
Gateway error taxonomy.

ConfigurationError and AdmissionDenied are raised before any model call
and never reach the ledger. ProviderError and OutputValidationError are
raised only after the failed attempt has been recorded.
"""

from typing import Any, Dict, List, Optional

from .decision import AdmissionDecision


class GatewayError(Exception):
    """Base class for errors surfaced by the generation gateway."""


class ConfigurationError(GatewayError):
    """The model provider is not configured."""


class AdmissionDenied(GatewayError):
    """A rate limit or token budget rejected the request."""

    def __init__(self, decision: AdmissionDecision):
        super().__init__(
            f"Request denied by {decision.reason}; retry after {decision.reset_at.isoformat()}"
        )
        self.decision = decision

    @property
    def reason(self) -> Optional[str]:
        return self.decision.reason

    @property
    def reset_at(self):
        return self.decision.reset_at


class ProviderError(GatewayError):
    """The model call failed."""

    def __init__(self, message: str, feature: Optional[str] = None):
        super().__init__(message)
        self.feature = feature


class OutputValidationError(GatewayError):
    """Structured output did not match the requested schema."""

    def __init__(self, message: str, violations: List[Dict[str, Any]]):
        super().__init__(message)
        self.violations = violations

"""
Admission decisions.

A decision is computed fresh for every check and never persisted.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission check.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Smallest remaining allowance observed across the checks
        reset_at: When the relevant window or budget resets
        reason: Name of the violated tier or budget when denied
    """
    allowed: bool
    remaining: int
    reset_at: datetime
    reason: Optional[str] = None

    @classmethod
    def deny(cls, reason: str, reset_at: datetime) -> "AdmissionDecision":
        return cls(allowed=False, remaining=0, reset_at=reset_at, reason=reason)

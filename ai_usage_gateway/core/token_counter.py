"""
Token counting and usage tracking.

Normalizes the token counts a provider reports on completion.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one model invocation.

    Contains the counts the provider reported, without estimation.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_counts(cls, prompt_tokens: Optional[int], completion_tokens: Optional[int]) -> "TokenUsage":
        """Build from provider counts, treating missing values as zero."""
        return cls(prompt_tokens=prompt_tokens or 0, completion_tokens=completion_tokens or 0)

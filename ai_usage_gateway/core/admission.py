"""
Combined admission check.

Enforcement Order:
1. Request rate limits - cheap, in memory
2. Daily token budgets - read from the ledger
"""

from .decision import AdmissionDecision
from .rate_limiter import MultiTierRateLimiter
from .token_budget import TokenBudgetGovernor


class AdmissionController:
    """Single allow/deny verdict from the rate limiter and token governor."""

    def __init__(self, rate_limiter: MultiTierRateLimiter, token_governor: TokenBudgetGovernor):
        self.rate_limiter = rate_limiter
        self.token_governor = token_governor

    async def check_all(self, actor_id: str, group_id: str) -> AdmissionDecision:
        rate = await self.rate_limiter.check_actor(actor_id, group_id)
        if not rate.allowed:
            return rate

        tokens = await self.token_governor.check_token_budget(actor_id, group_id)
        if not tokens.allowed:
            return tokens

        return AdmissionDecision(
            allowed=True,
            remaining=min(rate.remaining, tokens.remaining),
            reset_at=rate.reset_at
        )

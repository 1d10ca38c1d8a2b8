"""
Daily token budgets.

Budgets are recomputed from committed ledger records on every check, so
they survive restarts and cannot drift under concurrent requests.
"""

import asyncio
import logging
from typing import Optional

from ai_usage_gateway.config.loader import DEFAULT_TOKEN_LIMITS, TokenLimits
from ai_usage_gateway.storage.repository import UsageRepository
from .clock import Clock, SystemClock, next_utc_midnight, start_of_utc_day
from .decision import AdmissionDecision

logger = logging.getLogger(__name__)

BUDGET_UNAVAILABLE = "token-budget-unavailable"


class TokenBudgetGovernor:
    """Enforces per-actor and per-group daily token ceilings."""

    def __init__(
        self,
        repository: UsageRepository,
        limits: TokenLimits = DEFAULT_TOKEN_LIMITS,
        clock: Optional[Clock] = None
    ):
        self.repository = repository
        self.limits = limits
        self.clock = clock or SystemClock()

    async def check_token_budget(self, actor_id: str, group_id: str) -> AdmissionDecision:
        """Check today's successful token usage for the actor and its group.

        The day is the UTC calendar day. If the ledger cannot be read the
        check fails closed.

        Args:
            actor_id: Individual principal issuing the request
            group_id: Collective the actor belongs to

        Returns:
            AdmissionDecision with reset_at at the next UTC midnight
        """
        now = self.clock.now()
        day_start = start_of_utc_day(now)
        reset_at = next_utc_midnight(now)

        try:
            actor_used, group_used = await asyncio.gather(
                self.repository.sum_total_tokens(day_start, actor_id=actor_id),
                self.repository.sum_total_tokens(day_start, group_id=group_id)
            )
        except Exception:
            logger.exception(
                "Token budget query failed for actor %s in group %s; denying request",
                actor_id, group_id
            )
            return AdmissionDecision.deny(BUDGET_UNAVAILABLE, reset_at)

        if actor_used >= self.limits.per_actor_per_day:
            logger.info(
                "Daily token limit reached for actor %s: %d/%d",
                actor_id, actor_used, self.limits.per_actor_per_day
            )
            return AdmissionDecision.deny("actor-daily-tokens", reset_at)

        if group_used >= self.limits.per_group_per_day:
            logger.info(
                "Daily token limit reached for group %s: %d/%d",
                group_id, group_used, self.limits.per_group_per_day
            )
            return AdmissionDecision.deny("group-daily-tokens", reset_at)

        return AdmissionDecision(
            allowed=True,
            remaining=min(
                self.limits.per_actor_per_day - actor_used,
                self.limits.per_group_per_day - group_used
            ),
            reset_at=reset_at
        )

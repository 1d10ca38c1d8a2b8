"""
Multi-tier request rate limiting.

Checks an actor's minute, hour and day windows, then its group's, against
fixed-window counters.

Evaluation Order:
1. actor-minute, actor-hour, actor-day
2. group-minute, group-hour, group-day

The first exceeded tier denies the request. A tier is only counted once
it is reached, so a request denied at actor-minute never touches the
actor's hour and day windows or any group window.
"""

import logging
from datetime import timedelta
from typing import Dict, Tuple

from ai_usage_gateway.config.loader import (
    DEFAULT_ACTOR_LIMITS,
    DEFAULT_GROUP_LIMITS,
    RequestLimits,
)
from .decision import AdmissionDecision
from .window_store import WindowCounterStore, WindowKey

logger = logging.getLogger(__name__)

GRANULARITIES: Tuple[str, ...] = ("minute", "hour", "day")

WINDOW_DURATIONS: Dict[str, timedelta] = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
}


class MultiTierRateLimiter:
    """Request-count admission for actors and their groups."""

    def __init__(
        self,
        store: WindowCounterStore,
        actor_limits: RequestLimits = DEFAULT_ACTOR_LIMITS,
        group_limits: RequestLimits = DEFAULT_GROUP_LIMITS
    ):
        self.store = store
        self.actor_limits = actor_limits
        self.group_limits = group_limits

    async def check_actor(self, actor_id: str, group_id: str) -> AdmissionDecision:
        """Count one request for the actor and its group.

        Args:
            actor_id: Individual principal issuing the request
            group_id: Collective the actor belongs to

        Returns:
            AdmissionDecision; when allowed, remaining is the smallest
            allowance across all six tiers and reset_at is the earliest
            minute-level reset
        """
        actor = await self._check_principal("actor", actor_id, self.actor_limits)
        if not actor.allowed:
            return actor

        group = await self._check_principal("group", group_id, self.group_limits)
        if not group.allowed:
            return group

        return AdmissionDecision(
            allowed=True,
            remaining=min(actor.remaining, group.remaining),
            reset_at=min(actor.reset_at, group.reset_at)
        )

    async def check_group(self, group_id: str) -> AdmissionDecision:
        """Count one request against the group tiers only."""
        return await self._check_principal("group", group_id, self.group_limits)

    async def _check_principal(
        self,
        principal: str,
        principal_id: str,
        limits: RequestLimits
    ) -> AdmissionDecision:
        remaining = None
        minute_reset = None

        for granularity in GRANULARITIES:
            limit = limits.for_granularity(granularity)
            counter = await self.store.increment(
                WindowKey(principal, principal_id, granularity),
                WINDOW_DURATIONS[granularity]
            )
            if counter.count > limit:
                reason = f"{principal}-{granularity}"
                logger.info(
                    "Rate limit exceeded: %s %s at %d/%d, resets %s",
                    reason, principal_id, counter.count, limit, counter.reset_at.isoformat()
                )
                return AdmissionDecision.deny(reason, counter.reset_at)

            tier_remaining = limit - counter.count
            remaining = tier_remaining if remaining is None else min(remaining, tier_remaining)
            if minute_reset is None:
                minute_reset = counter.reset_at

        return AdmissionDecision(allowed=True, remaining=remaining, reset_at=minute_reset)

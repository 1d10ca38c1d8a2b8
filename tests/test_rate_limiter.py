"""
Tests for multi-tier rate limiting.
"""

from datetime import timedelta

import pytest

from ai_usage_gateway.config.loader import RequestLimits
from ai_usage_gateway.core.rate_limiter import MultiTierRateLimiter
from ai_usage_gateway.core.window_store import InMemoryWindowStore, WindowKey

from conftest import ManualClock

GENEROUS = RequestLimits(per_minute=1000, per_hour=1000, per_day=1000)


def make_limiter(clock, actor_limits=None, group_limits=None):
    store = InMemoryWindowStore(clock)
    limiter = MultiTierRateLimiter(
        store,
        actor_limits or RequestLimits(per_minute=2, per_hour=100, per_day=500),
        group_limits or GENEROUS
    )
    return limiter, store


class TestActorTiers:
    """Test actor minute/hour/day enforcement."""

    @pytest.mark.asyncio
    async def test_three_requests_with_minute_ceiling_two(self):
        """allowed(1), allowed(0), then denied at actor-minute for ~60s."""
        clock = ManualClock()
        limiter, _ = make_limiter(clock)

        first = await limiter.check_actor("a1", "g1")
        clock.advance(0.3)
        second = await limiter.check_actor("a1", "g1")
        clock.advance(0.3)
        third = await limiter.check_actor("a1", "g1")

        assert first.allowed and first.remaining == 1
        assert second.allowed and second.remaining == 0
        assert not third.allowed
        assert third.reason == "actor-minute"
        assert third.remaining == 0
        expected_reset = clock.now() - timedelta(seconds=0.6) + timedelta(minutes=1)
        assert third.reset_at == expected_reset

    @pytest.mark.asyncio
    async def test_exactly_limit_requests_succeed(self):
        """Of N checks in one window only the first L are allowed."""
        clock = ManualClock()
        limit = 10
        limiter, _ = make_limiter(
            clock, actor_limits=RequestLimits(per_minute=limit, per_hour=1000, per_day=1000)
        )

        results = [await limiter.check_actor("a1", "g1") for _ in range(25)]

        assert [r.allowed for r in results] == [True] * limit + [False] * 15

    @pytest.mark.asyncio
    async def test_next_window_allows_again(self):
        """After reset_at the next check succeeds and the counter restarts at 1."""
        clock = ManualClock()
        limiter, store = make_limiter(clock)
        for _ in range(7):
            await limiter.check_actor("a1", "g1")

        clock.advance(60)
        decision = await limiter.check_actor("a1", "g1")

        assert decision.allowed
        assert store.get(WindowKey("actor", "a1", "minute")).count == 1

    @pytest.mark.asyncio
    async def test_minute_denial_does_not_reach_coarser_tiers(self):
        """Requests denied at the minute tier never count toward hour or day."""
        clock = ManualClock()
        limiter, store = make_limiter(clock)

        for _ in range(5):
            await limiter.check_actor("a1", "g1")

        assert store.get(WindowKey("actor", "a1", "minute")).count == 5
        assert store.get(WindowKey("actor", "a1", "hour")).count == 2
        assert store.get(WindowKey("actor", "a1", "day")).count == 2
        assert store.get(WindowKey("group", "g1", "minute")).count == 2

    @pytest.mark.asyncio
    async def test_hour_tier_denial_reports_hour_reset(self):
        clock = ManualClock()
        limiter, _ = make_limiter(
            clock, actor_limits=RequestLimits(per_minute=5, per_hour=3, per_day=100)
        )
        start = clock.now()

        for _ in range(3):
            assert (await limiter.check_actor("a1", "g1")).allowed
        denied = await limiter.check_actor("a1", "g1")

        assert denied.reason == "actor-hour"
        assert denied.reset_at == start + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_day_tier_denial(self):
        clock = ManualClock()
        limiter, _ = make_limiter(
            clock, actor_limits=RequestLimits(per_minute=5, per_hour=50, per_day=2)
        )

        await limiter.check_actor("a1", "g1")
        await limiter.check_actor("a1", "g1")
        denied = await limiter.check_actor("a1", "g1")

        assert denied.reason == "actor-day"


class TestGroupTiers:
    """Test that group ceilings apply across actors."""

    @pytest.mark.asyncio
    async def test_group_minute_ceiling_spans_actors(self):
        clock = ManualClock()
        limiter, _ = make_limiter(
            clock,
            actor_limits=GENEROUS,
            group_limits=RequestLimits(per_minute=3, per_hour=100, per_day=100)
        )

        assert (await limiter.check_actor("a1", "g1")).allowed
        assert (await limiter.check_actor("a2", "g1")).allowed
        assert (await limiter.check_actor("a3", "g1")).allowed
        denied = await limiter.check_actor("a4", "g1")

        assert not denied.allowed
        assert denied.reason == "group-minute"

    @pytest.mark.asyncio
    async def test_actor_denial_skips_group(self):
        """The group is only evaluated once all actor tiers pass."""
        clock = ManualClock()
        limiter, store = make_limiter(
            clock, actor_limits=RequestLimits(per_minute=1, per_hour=10, per_day=10)
        )

        await limiter.check_actor("a1", "g1")
        await limiter.check_actor("a1", "g1")

        assert store.get(WindowKey("group", "g1", "minute")).count == 1

    @pytest.mark.asyncio
    async def test_remaining_is_minimum_across_actor_and_group(self):
        clock = ManualClock()
        limiter, _ = make_limiter(
            clock,
            actor_limits=RequestLimits(per_minute=10, per_hour=100, per_day=500),
            group_limits=RequestLimits(per_minute=4, per_hour=500, per_day=5000)
        )

        decision = await limiter.check_actor("a1", "g1")

        assert decision.allowed
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_check_group_only(self):
        clock = ManualClock()
        limiter, _ = make_limiter(
            clock, group_limits=RequestLimits(per_minute=1, per_hour=10, per_day=10)
        )

        assert (await limiter.check_group("g1")).allowed
        assert (await limiter.check_group("g1")).reason == "group-minute"

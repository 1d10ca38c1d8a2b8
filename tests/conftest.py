"""
Shared fixtures: a manual clock, a scripted provider and a fresh ledger.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio

from ai_usage_gateway.core.clock import Clock
from ai_usage_gateway.core.token_counter import TokenUsage
from ai_usage_gateway.sdk.provider import ModelProvider, ProviderResult, StreamChunk
from ai_usage_gateway.storage.models import UsageRecord
from ai_usage_gateway.storage.repository import UsageRepository

# Ensure tests don't accidentally use a real API key
os.environ.pop("OPENAI_API_KEY", None)


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds


class ScriptedProvider(ModelProvider):
    """ModelProvider returning canned results and recording requests."""

    def __init__(
        self,
        text: str = "Hello there",
        usage: Optional[TokenUsage] = None,
        error: Optional[Exception] = None,
        chunks: Optional[List[StreamChunk]] = None,
        stream_error: Optional[Exception] = None,
        configured: bool = True,
        clock: Optional[ManualClock] = None,
        latency: float = 0.0
    ):
        self.text = text
        self.usage = usage or TokenUsage(prompt_tokens=100, completion_tokens=50)
        self.error = error
        self.chunks = chunks
        self.stream_error = stream_error
        self.configured = configured
        self.clock = clock
        self.latency = latency
        self.requests = []
        self.stream_closed = False

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, request):
        self.requests.append(request)
        if self.clock is not None:
            self.clock.advance(self.latency)
        if self.error is not None:
            raise self.error
        return ProviderResult(text=self.text, usage=self.usage, response_id="resp_1")

    async def generate_json(self, request, schema_name, json_schema):
        self.requests.append((request, schema_name, json_schema))
        if self.error is not None:
            raise self.error
        return ProviderResult(text=self.text, usage=self.usage, response_id="resp_1")

    async def stream(self, request):
        self.requests.append(request)
        chunks = self.chunks if self.chunks is not None else [
            StreamChunk(text="Hel"),
            StreamChunk(text="lo"),
            StreamChunk(usage=self.usage),
        ]
        try:
            for index, chunk in enumerate(chunks):
                if self.stream_error is not None and index == len(chunks) - 1:
                    raise self.stream_error
                yield chunk
        finally:
            self.stream_closed = True


def make_record(
    actor_id: str = "actor-1",
    group_id: str = "group-1",
    total_tokens: int = 1000,
    success: bool = True,
    timestamp: Optional[datetime] = None,
    feature: str = "generate-bio"
) -> UsageRecord:
    """Ledger entry with the prompt/completion split 3:1."""
    prompt = (total_tokens * 3) // 4
    return UsageRecord(
        actor_id=actor_id,
        group_id=group_id,
        feature=feature,
        endpoint=f"/api/ai/{feature}",
        model="gpt-4o-mini",
        prompt_tokens=prompt,
        completion_tokens=total_tokens - prompt,
        total_tokens=total_tokens,
        cost_cents=0.0,
        latency_ms=120,
        success=success,
        error_message=None if success else "boom",
        timestamp=timestamp or datetime(2024, 5, 1, 11, 0, 0, tzinfo=timezone.utc)
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest_asyncio.fixture
async def repository(tmp_path):
    repo = UsageRepository(str(tmp_path / "ledger.db"))
    await repo.initialize_schema()
    return repo

"""
Tests for the generation gateway.

Every admitted call must leave exactly one ledger record; calls rejected
before reaching the provider must leave none.
"""

import asyncio

import pytest
from pydantic import BaseModel

from ai_usage_gateway.config.loader import GatewayConfig, RequestLimits, TokenLimits
from ai_usage_gateway.core.errors import (
    AdmissionDenied,
    ConfigurationError,
    OutputValidationError,
    ProviderError,
)
from ai_usage_gateway.core.pricing import calculate_cost
from ai_usage_gateway.core.prompts import PromptTemplate
from ai_usage_gateway.core.token_counter import TokenUsage
from ai_usage_gateway.sdk.gateway import STREAM_CANCELLED_MESSAGE, GenerationGateway
from ai_usage_gateway.sdk.provider import StreamChunk
from ai_usage_gateway.sdk.streaming import CancellationToken, StreamStatus
from ai_usage_gateway.storage.repository import PromptTemplateRepository

from conftest import ScriptedProvider, make_record

HISTORY = [{"role": "user", "content": "Hi"}]


class Bio(BaseModel):
    headline: str
    years: int


def make_gateway(repository, clock, provider=None, actor_limits=None, token_limits=None):
    config = GatewayConfig(
        actor_limits=actor_limits or RequestLimits(per_minute=10, per_hour=100, per_day=500),
        token_limits=token_limits or TokenLimits(per_actor_per_day=100_000, per_group_per_day=1_000_000)
    )
    return GenerationGateway.from_config(
        config,
        db_path=repository.db_path,
        provider=provider or ScriptedProvider(clock=clock),
        clock=clock
    )


class TestGenerateText:
    """Test the one-shot text path."""

    @pytest.mark.asyncio
    async def test_success_writes_one_record(self, repository, clock):
        provider = ScriptedProvider(clock=clock, latency=0.25)
        gateway = make_gateway(repository, clock, provider)

        result = await gateway.generate_text("actor-1", "group-1", "generate-bio", "Write my bio")

        records = await repository.fetch_recent_records()
        assert result.text == "Hello there"
        assert result.model == "gpt-4o-mini"
        assert result.latency_ms == 250
        assert len(records) == 1
        record = records[0]
        assert record.success
        assert record.error_message is None
        assert record.total_tokens == 150
        assert record.cost_cents == calculate_cost("gpt-4o-mini", 100, 50)
        assert record.endpoint == "/api/ai/generate-bio"
        assert record.latency_ms == 250
        assert record.request_summary == "Write my bio"
        assert record.response_summary == "Hello there"
        assert record.timestamp == clock.now()

    @pytest.mark.asyncio
    async def test_feature_profile_reaches_provider(self, repository, clock):
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)

        await gateway.generate_text(
            "actor-1", "group-1", "enhance-shoutout", "Thanks!", system_prompt="Be warm", max_tokens=42
        )

        request = provider.requests[0]
        assert request.model == "gpt-4o-mini"
        assert request.temperature == 0.8
        assert request.max_tokens == 42
        assert request.to_messages() == [
            {"role": "system", "content": "Be warm"},
            {"role": "user", "content": "Thanks!"},
        ]

    @pytest.mark.asyncio
    async def test_summaries_truncated(self, repository, clock):
        provider = ScriptedProvider(text="y" * 500)
        gateway = make_gateway(repository, clock, provider)

        await gateway.generate_text("actor-1", "group-1", "generate-bio", "x" * 500)

        record = (await repository.fetch_recent_records())[0]
        assert record.request_summary == "x" * 200
        assert record.response_summary == "y" * 200

    @pytest.mark.asyncio
    async def test_provider_failure_recorded_then_raised(self, repository, clock):
        provider = ScriptedProvider(error=RuntimeError("upstream timeout"))
        gateway = make_gateway(repository, clock, provider)

        with pytest.raises(ProviderError, match="upstream timeout") as excinfo:
            await gateway.generate_text("actor-1", "group-1", "generate-bio", "Write my bio")

        records = await repository.fetch_recent_records()
        assert excinfo.value.feature == "generate-bio"
        assert len(records) == 1
        assert not records[0].success
        assert records[0].error_message == "upstream timeout"
        assert records[0].total_tokens == 0
        assert records[0].cost_cents == 0.0

    @pytest.mark.asyncio
    async def test_task_cancellation_recorded_and_propagated(self, repository, clock):
        provider = ScriptedProvider(error=asyncio.CancelledError())
        gateway = make_gateway(repository, clock, provider)

        with pytest.raises(asyncio.CancelledError):
            await gateway.generate_text("actor-1", "group-1", "generate-bio", "Write my bio")

        records = await repository.fetch_recent_records()
        assert len(records) == 1
        assert records[0].error_message == "CancelledError"

    @pytest.mark.asyncio
    async def test_admission_denial_writes_nothing(self, repository, clock):
        provider = ScriptedProvider()
        gateway = make_gateway(
            repository, clock, provider, actor_limits=RequestLimits(per_minute=1, per_hour=10, per_day=10)
        )
        await gateway.generate_text("actor-1", "group-1", "generate-bio", "one")

        with pytest.raises(AdmissionDenied) as excinfo:
            await gateway.generate_text("actor-1", "group-1", "generate-bio", "two")

        assert excinfo.value.reason == "actor-minute"
        assert excinfo.value.decision.allowed is False
        assert len(provider.requests) == 1
        assert len(await repository.fetch_recent_records()) == 1

    @pytest.mark.asyncio
    async def test_token_budget_denial(self, repository, clock):
        gateway = make_gateway(
            repository, clock, token_limits=TokenLimits(per_actor_per_day=1000, per_group_per_day=1_000_000)
        )
        await repository.insert_usage_record(make_record(total_tokens=1000))

        with pytest.raises(AdmissionDenied) as excinfo:
            await gateway.generate_text("actor-1", "group-1", "generate-bio", "Write my bio")

        assert excinfo.value.reason == "actor-daily-tokens"

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, repository, clock):
        gateway = make_gateway(repository, clock, ScriptedProvider(configured=False))

        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY not configured"):
            await gateway.generate_text("actor-1", "group-1", "generate-bio", "Write my bio")

        assert await repository.fetch_recent_records() == []
        assert len(gateway.window_store) == 0

    @pytest.mark.asyncio
    async def test_unknown_feature_consumes_no_counters(self, repository, clock):
        gateway = make_gateway(repository, clock)

        with pytest.raises(ValueError, match="Unknown feature"):
            await gateway.generate_text("actor-1", "group-1", "write-novel", "Once upon a time")

        assert len(gateway.window_store) == 0

    @pytest.mark.asyncio
    async def test_skip_admission_still_records(self, repository, clock):
        gateway = make_gateway(
            repository, clock, actor_limits=RequestLimits(per_minute=1, per_hour=10, per_day=10)
        )

        for _ in range(3):
            await gateway.generate_text("actor-1", "group-1", "generate-bio", "bio", skip_admission=True)

        assert len(gateway.window_store) == 0
        assert len(await repository.fetch_recent_records()) == 3


class TestGenerateStructured:
    """Test schema-validated generation."""

    @pytest.mark.asyncio
    async def test_valid_output(self, repository, clock):
        provider = ScriptedProvider(text='{"headline": "Builder", "years": 5}')
        gateway = make_gateway(repository, clock, provider)

        result = await gateway.generate_structured("actor-1", "group-1", "generate-bio", "bio", Bio)

        _, schema_name, json_schema = provider.requests[0]
        record = (await repository.fetch_recent_records())[0]
        assert result.data == Bio(headline="Builder", years=5)
        assert schema_name == "Bio"
        assert set(json_schema["required"]) == {"headline", "years"}
        assert record.success
        assert record.response_summary == '{"headline":"Builder","years":5}'

    @pytest.mark.asyncio
    async def test_invalid_output_recorded_as_failure(self, repository, clock):
        provider = ScriptedProvider(text='{"headline": "Builder"}')
        gateway = make_gateway(repository, clock, provider)

        with pytest.raises(OutputValidationError) as excinfo:
            await gateway.generate_structured("actor-1", "group-1", "generate-bio", "bio", Bio)

        records = await repository.fetch_recent_records()
        assert excinfo.value.violations[0]["loc"] == "years"
        assert excinfo.value.violations[0]["type"] == "missing"
        assert len(records) == 1
        assert not records[0].success
        assert records[0].total_tokens == 150
        assert "1 violation" in records[0].error_message

    @pytest.mark.asyncio
    async def test_malformed_json(self, repository, clock):
        gateway = make_gateway(repository, clock, ScriptedProvider(text="not json"))

        with pytest.raises(OutputValidationError):
            await gateway.generate_structured("actor-1", "group-1", "generate-bio", "bio", Bio)

        assert len(await repository.fetch_recent_records()) == 1


class TestGenerateFromTemplate:
    """Test generation from named prompt templates."""

    @pytest.mark.asyncio
    async def test_builtin_template_sets_sampling(self, repository, clock):
        """Temperature and max_tokens come from the template, the model from the feature."""
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)

        result = await gateway.generate_from_template(
            "actor-1", "group-1", "generate-bio", "goal-suggester",
            {"employeeName": "Dana", "topStrengths": ["Achiever", "Focus"], "role": "Engineer"}
        )

        request = provider.requests[0]
        assert result.text == "Hello there"
        assert request.model == "gpt-4o-mini"
        assert request.temperature == 0.7
        assert request.max_tokens == 1000
        assert request.prompt.startswith("Suggest 3 development goals for Dana.")
        assert "Their top strengths: Achiever, Focus" in request.prompt
        assert "Team context" not in request.prompt
        assert request.system_prompt.startswith("You are a development goal generator")

        records = await repository.fetch_recent_records()
        assert len(records) == 1
        assert records[0].feature == "generate-bio"
        assert records[0].request_summary == request.prompt[:200]

    @pytest.mark.asyncio
    async def test_stored_template_overrides_builtin(self, repository, clock):
        await PromptTemplateRepository(repository.db_path).save_template(PromptTemplate(
            name="bio-generator",
            system_prompt="",
            user_prompt="Bio for {{userName}}",
            model_id="gpt-4o",
            temperature=0.2,
            max_tokens=64,
            variables=("userName",)
        ))
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)

        await gateway.generate_from_template(
            "actor-1", "group-1", "generate-bio", "bio-generator", {"userName": "Sam"}
        )

        request = provider.requests[0]
        assert request.prompt == "Bio for Sam"
        assert request.system_prompt is None
        assert request.temperature == 0.2
        assert request.max_tokens == 64
        assert request.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_missing_template_writes_nothing(self, repository, clock):
        """An unknown template fails before admission, so no counter is consumed."""
        provider = ScriptedProvider()
        gateway = make_gateway(
            repository, clock, provider, actor_limits=RequestLimits(per_minute=1, per_hour=10, per_day=10)
        )

        with pytest.raises(ValueError, match="Template 'no-such-template' not found"):
            await gateway.generate_from_template(
                "actor-1", "group-1", "generate-bio", "no-such-template", {}
            )

        assert provider.requests == []
        assert await repository.fetch_recent_records() == []
        await gateway.generate_text("actor-1", "group-1", "generate-bio", "still admitted")

    @pytest.mark.asyncio
    async def test_provider_failure_recorded(self, repository, clock):
        provider = ScriptedProvider(error=RuntimeError("upstream timeout"))
        gateway = make_gateway(repository, clock, provider)

        with pytest.raises(ProviderError, match="upstream timeout"):
            await gateway.generate_from_template(
                "actor-1", "group-1", "generate-bio", "bio-generator",
                {"style": "short", "userName": "Sam", "topStrengths": "Learner"}
            )

        records = await repository.fetch_recent_records()
        assert len(records) == 1
        assert not records[0].success


class TestStreamText:
    """Test that streams are accounted exactly once however they end."""

    @pytest.mark.asyncio
    async def test_completed_stream(self, repository, clock):
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)
        finished = []

        stream = await gateway.stream_text(
            "actor-1", "group-1", "chat", HISTORY,
            on_finish=lambda usage, text: finished.append((usage, text))
        )
        text = await stream.collect()

        records = await repository.fetch_recent_records()
        assert text == "Hello"
        assert stream.status is StreamStatus.COMPLETED
        assert finished == [(TokenUsage(100, 50), "Hello")]
        assert provider.stream_closed
        assert len(records) == 1
        assert records[0].success
        assert records[0].total_tokens == 150
        assert records[0].request_summary == "Hi"
        assert records[0].response_summary == "Hello"

    @pytest.mark.asyncio
    async def test_async_on_finish_awaited(self, repository, clock):
        gateway = make_gateway(repository, clock)
        finished = []

        async def on_finish(usage, text):
            finished.append(text)

        stream = await gateway.stream_text("actor-1", "group-1", "chat", HISTORY, on_finish=on_finish)
        await stream.collect()

        assert finished == ["Hello"]

    @pytest.mark.asyncio
    async def test_cancel_token_stops_stream(self, repository, clock):
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)
        token = CancellationToken()
        received = []

        stream = await gateway.stream_text("actor-1", "group-1", "chat", HISTORY, cancel_token=token)
        async for delta in stream:
            received.append(delta)
            token.cancel()

        records = await repository.fetch_recent_records()
        assert received == ["Hel"]
        assert stream.status is StreamStatus.CANCELLED
        assert provider.stream_closed
        assert len(records) == 1
        assert records[0].success
        assert records[0].error_message == STREAM_CANCELLED_MESSAGE
        assert records[0].prompt_tokens == 0
        assert records[0].completion_tokens == 1
        assert records[0].response_summary == "Hel"

    @pytest.mark.asyncio
    async def test_cancel_prefers_reported_usage(self, repository, clock):
        chunks = [
            StreamChunk(text="Hel"),
            StreamChunk(usage=TokenUsage(30, 2)),
            StreamChunk(text="lo"),
        ]
        gateway = make_gateway(repository, clock, ScriptedProvider(chunks=chunks))

        stream = await gateway.stream_text("actor-1", "group-1", "chat", HISTORY)
        async for delta in stream:
            if delta == "lo":
                stream.cancel()

        record = (await repository.fetch_recent_records())[0]
        assert record.prompt_tokens == 30
        assert record.completion_tokens == 2

    @pytest.mark.asyncio
    async def test_consumer_leaving_early(self, repository, clock):
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)
        finished = []

        async with await gateway.stream_text(
            "actor-1", "group-1", "chat", HISTORY,
            on_finish=lambda usage, text: finished.append(text)
        ) as stream:
            async for _ in stream:
                break

        records = await repository.fetch_recent_records()
        assert stream.finished
        assert provider.stream_closed
        assert finished == ["Hel"]
        assert len(records) == 1
        assert records[0].error_message == STREAM_CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_abandoned_stream_recorded_without_close(self, repository, clock):
        """Dropping a half-read stream still writes its record promptly."""
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)

        stream = await gateway.stream_text("actor-1", "group-1", "chat", HISTORY)
        async for _ in stream:
            break
        del stream

        records = []
        for _ in range(50):
            records = await repository.fetch_recent_records()
            if records:
                break
            await asyncio.sleep(0.01)

        assert len(records) == 1
        assert records[0].error_message == STREAM_CANCELLED_MESSAGE
        assert records[0].completion_tokens == 1
        assert provider.stream_closed

    @pytest.mark.asyncio
    async def test_on_finish_error_propagates_unchanged(self, repository, clock):
        gateway = make_gateway(repository, clock)

        def on_finish(usage, text):
            raise RuntimeError("caller bug")

        stream = await gateway.stream_text("actor-1", "group-1", "chat", HISTORY, on_finish=on_finish)
        with pytest.raises(RuntimeError, match="caller bug") as excinfo:
            await stream.collect()

        records = await repository.fetch_recent_records()
        assert not isinstance(excinfo.value, ProviderError)
        assert stream.status is StreamStatus.COMPLETED
        assert len(records) == 1
        assert records[0].success

    @pytest.mark.asyncio
    async def test_provider_failure_mid_stream(self, repository, clock):
        provider = ScriptedProvider(stream_error=RuntimeError("connection reset"))
        gateway = make_gateway(repository, clock, provider)
        finished = []

        stream = await gateway.stream_text(
            "actor-1", "group-1", "chat", HISTORY,
            on_finish=lambda usage, text: finished.append(text)
        )
        with pytest.raises(ProviderError, match="connection reset"):
            await stream.collect()

        records = await repository.fetch_recent_records()
        assert stream.status is StreamStatus.FAILED
        assert finished == []
        assert len(records) == 1
        assert not records[0].success
        assert records[0].error_message == "connection reset"
        assert records[0].total_tokens == 0

    @pytest.mark.asyncio
    async def test_stream_never_started(self, repository, clock):
        provider = ScriptedProvider()
        gateway = make_gateway(repository, clock, provider)

        stream = await gateway.stream_text("actor-1", "group-1", "chat", HISTORY)
        await stream.aclose()

        assert stream.finished
        assert provider.requests == []
        assert await repository.fetch_recent_records() == []

    @pytest.mark.asyncio
    async def test_stream_iterates_once(self, repository, clock):
        gateway = make_gateway(repository, clock)
        stream = await gateway.stream_text("actor-1", "group-1", "chat", HISTORY)
        await stream.collect()

        with pytest.raises(RuntimeError, match="only be iterated once"):
            stream.__aiter__()

        assert len(await repository.fetch_recent_records()) == 1

    @pytest.mark.asyncio
    async def test_stream_admission_denied(self, repository, clock):
        provider = ScriptedProvider()
        gateway = make_gateway(
            repository, clock, provider, actor_limits=RequestLimits(per_minute=1, per_hour=10, per_day=10)
        )
        await (await gateway.stream_text("actor-1", "group-1", "chat", HISTORY)).collect()

        with pytest.raises(AdmissionDenied):
            await gateway.stream_text("actor-1", "group-1", "chat", HISTORY)

        assert len(provider.requests) == 1


class TestGatewayLifecycle:
    """Test stats, readiness and the window store lifecycle."""

    @pytest.mark.asyncio
    async def test_usage_stats(self, repository, clock):
        gateway = make_gateway(repository, clock)
        await repository.insert_usage_record(make_record(actor_id="actor-1", total_tokens=300))
        await repository.insert_usage_record(make_record(actor_id="actor-2", total_tokens=200, success=False))

        stats = await gateway.get_usage_stats("actor-1", "group-1")

        assert stats.actor.requests == 1
        assert stats.actor.tokens == 300
        assert stats.group.requests == 2
        assert stats.limits["rate_limits"]["actor"]["per_minute"] == 10

    @pytest.mark.asyncio
    async def test_readiness(self, repository, clock):
        assert make_gateway(repository, clock).check_ai_ready().ready
        not_ready = make_gateway(repository, clock, ScriptedProvider(configured=False)).check_ai_ready()
        assert not not_ready.ready
        assert not_ready.reason == "OPENAI_API_KEY not configured"

    @pytest.mark.asyncio
    async def test_context_manager_runs_sweeper(self, repository, clock):
        gateway = make_gateway(repository, clock)

        async with gateway:
            assert gateway.window_store.running

        assert not gateway.window_store.running

"""
Generation gateway.

Every model call in the application goes through GenerationGateway, which
runs admission before the call and writes the usage ledger after it.

Call Sequence:
1. Provider configured? Otherwise ConfigurationError (nothing recorded)
2. Admission check, unless bypassed. Otherwise AdmissionDenied (nothing recorded)
3. Provider call, timed with the injected clock
4. One UsageRecord, success or failure, before returning or raising
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import (
    Any, AsyncIterator, Callable, Dict, Generic, List, Optional, Type, TypeVar
)

from ..config.loader import GatewayConfig
from ..core.admission import AdmissionController
from ..core.clock import Clock, SystemClock, start_of_utc_day
from ..core.errors import (
    AdmissionDenied,
    ConfigurationError,
    OutputValidationError,
    ProviderError,
)
from ..core.features import FeatureProfile, get_feature_settings
from ..core.pricing import calculate_cost
from ..core.prompts import render_template
from ..core.rate_limiter import MultiTierRateLimiter
from ..core.token_budget import TokenBudgetGovernor
from ..core.token_counter import TokenUsage
from ..core.validation import json_schema_for, summarize_value, validate_output
from ..core.window_store import InMemoryWindowStore, WindowCounterStore
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import UsageRecord, UsageStats
from ..storage.repository import PromptTemplateRepository, UsageRepository
from .provider import ModelProvider, OpenAIProvider, ProviderRequest, StreamChunk
from .streaming import CancellationToken, StreamOutcome, StreamStatus, UsageStream
from .templates import TemplateCatalog

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_LENGTH = 200
STREAM_CANCELLED_MESSAGE = "stream cancelled"


@dataclass(frozen=True)
class ReadinessStatus:
    """Whether the gateway can reach a configured provider."""
    ready: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class GenerationResult:
    """Text produced by a successful call."""
    text: str
    usage: TokenUsage
    model: str
    latency_ms: int


@dataclass(frozen=True)
class StructuredResult(Generic[T]):
    """Schema-validated value produced by a successful call."""
    data: T
    usage: TokenUsage
    model: str
    latency_ms: int


def _truncate(text: Optional[str], length: int) -> Optional[str]:
    if text is None:
        return None
    return text[:length]


class GenerationGateway:
    """The single choke point for model calls.

    The gateway keeps no per-call state; conversation continuity belongs to
    ChatSession.
    """

    def __init__(
        self,
        provider: Optional[ModelProvider],
        admission: AdmissionController,
        repository: UsageRepository,
        clock: Optional[Clock] = None,
        config: Optional[GatewayConfig] = None,
        window_store: Optional[WindowCounterStore] = None,
        summary_length: int = SUMMARY_LENGTH,
        templates: Optional[TemplateCatalog] = None
    ):
        """Initialize the gateway.

        Args:
            provider: Model provider, or None when no provider is configured
            admission: Combined rate-limit and token-budget check
            repository: Usage ledger
            clock: Time source for latency and reporting
            config: Limits reported by get_usage_stats
            window_store: Counter store whose lifecycle start()/stop() manage
            summary_length: Characters of prompt/response kept in the ledger
            templates: Prompt templates for generate_from_template (built-ins only
                when omitted)
        """
        self.provider = provider
        self.admission = admission
        self.repository = repository
        self.clock = clock or SystemClock()
        self.config = config or GatewayConfig()
        self.window_store = window_store
        self.summary_length = summary_length
        self.templates = templates or TemplateCatalog()

    @classmethod
    def from_config(
        cls,
        config: Optional[GatewayConfig] = None,
        db_path: str = DEFAULT_DB_PATH,
        provider: Optional[ModelProvider] = None,
        clock: Optional[Clock] = None,
        window_store: Optional[WindowCounterStore] = None
    ) -> "GenerationGateway":
        """Wire the full admission stack over an SQLite ledger.

        Args:
            config: Limits (defaults apply when omitted)
            db_path: Path to SQLite database file
            provider: Model provider (defaults to OpenAI from the environment)
            clock: Shared time source
            window_store: Counter store (defaults to the in-memory store)
        """
        config = config or GatewayConfig()
        clock = clock or SystemClock()
        store = window_store or InMemoryWindowStore(
            clock, timedelta(seconds=config.sweep_interval_seconds)
        )
        repository = UsageRepository(db_path)
        admission = AdmissionController(
            MultiTierRateLimiter(store, config.actor_limits, config.group_limits),
            TokenBudgetGovernor(repository, config.token_limits, clock)
        )
        return cls(
            provider=provider if provider is not None else OpenAIProvider(),
            admission=admission,
            repository=repository,
            clock=clock,
            config=config,
            window_store=store,
            templates=TemplateCatalog(PromptTemplateRepository(db_path))
        )

    async def start(self) -> None:
        if self.window_store is not None:
            await self.window_store.start()

    async def stop(self) -> None:
        if self.window_store is not None:
            await self.window_store.stop()

    async def __aenter__(self) -> "GenerationGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def check_ai_ready(self) -> ReadinessStatus:
        """Check provider configuration without making a call."""
        if self.provider is None or not self.provider.is_configured:
            return ReadinessStatus(ready=False, reason="OPENAI_API_KEY not configured")
        return ReadinessStatus(ready=True)

    async def get_usage_stats(self, actor_id: str, group_id: str) -> UsageStats:
        """Today's (UTC) requests and tokens for the actor and group.

        Counts every recorded attempt, failed ones included.
        """
        since = start_of_utc_day(self.clock.now())
        actor, group = await asyncio.gather(
            self.repository.get_principal_usage(since, actor_id=actor_id),
            self.repository.get_principal_usage(since, group_id=group_id)
        )
        return UsageStats(actor=actor, group=group, limits=self.config.as_dict())

    async def generate_text(
        self,
        actor_id: str,
        group_id: str,
        feature: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        skip_admission: bool = False
    ) -> GenerationResult:
        """Generate text for a feature.

        Raises:
            ConfigurationError: Provider not configured
            AdmissionDenied: Rate limit or token budget exceeded
            ProviderError: The model call failed (already recorded)
        """
        profile = await self._preflight(actor_id, group_id, feature, skip_admission)
        request = self._build_request(
            profile, temperature, max_tokens, system_prompt=system_prompt, prompt=prompt
        )

        started = self.clock.monotonic()
        try:
            result = await self.provider.generate(request)
        except (Exception, asyncio.CancelledError) as e:
            await self._record_failure(actor_id, group_id, profile, started, e, request_summary=prompt)
            if isinstance(e, asyncio.CancelledError):
                raise
            raise ProviderError(str(e) or type(e).__name__, feature) from e

        latency_ms = self._elapsed_ms(started)
        await self._record(
            actor_id, group_id, profile, result.usage, latency_ms,
            success=True,
            request_summary=prompt,
            response_summary=result.text
        )
        logger.info("Generated response for %s in %dms", feature, latency_ms)
        return GenerationResult(
            text=result.text,
            usage=result.usage,
            model=profile.model_id,
            latency_ms=latency_ms
        )

    async def generate_from_template(
        self,
        actor_id: str,
        group_id: str,
        feature: str,
        template_name: str,
        variables: Dict[str, Any],
        skip_admission: bool = False
    ) -> GenerationResult:
        """Render a named prompt template and generate text from it.

        The template supplies temperature and max_tokens; the model comes
        from the feature profile.

        Raises:
            ValueError: No template with that name (nothing recorded)
            ConfigurationError: Provider not configured
            AdmissionDenied: Rate limit or token budget exceeded
            ProviderError: The model call failed (already recorded)
        """
        template = await self.templates.get_template(template_name)
        if template is None:
            raise ValueError(f"Template '{template_name}' not found")

        system_prompt = render_template(template.system_prompt, variables)
        return await self.generate_text(
            actor_id, group_id, feature,
            prompt=render_template(template.user_prompt, variables),
            system_prompt=system_prompt or None,
            temperature=template.temperature,
            max_tokens=template.max_tokens,
            skip_admission=skip_admission
        )

    async def generate_structured(
        self,
        actor_id: str,
        group_id: str,
        feature: str,
        prompt: str,
        schema: Type[T],
        schema_name: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        skip_admission: bool = False
    ) -> StructuredResult[T]:
        """Generate a value matching schema.

        Raises:
            ConfigurationError: Provider not configured
            AdmissionDenied: Rate limit or token budget exceeded
            ProviderError: The model call failed (already recorded)
            OutputValidationError: Output did not match schema (already recorded)
        """
        profile = await self._preflight(actor_id, group_id, feature, skip_admission)
        request = self._build_request(
            profile, temperature, max_tokens, system_prompt=system_prompt, prompt=prompt
        )
        name = schema_name or getattr(schema, "__name__", "output")

        started = self.clock.monotonic()
        try:
            result = await self.provider.generate_json(request, name, json_schema_for(schema))
        except (Exception, asyncio.CancelledError) as e:
            await self._record_failure(actor_id, group_id, profile, started, e, request_summary=prompt)
            if isinstance(e, asyncio.CancelledError):
                raise
            raise ProviderError(str(e) or type(e).__name__, feature) from e

        latency_ms = self._elapsed_ms(started)
        try:
            data = validate_output(schema, result.text)
        except OutputValidationError as e:
            await self._record(
                actor_id, group_id, profile, result.usage, latency_ms,
                success=False,
                error_message=str(e),
                request_summary=prompt,
                response_summary=result.text
            )
            logger.error("Structured output for %s failed validation: %s", feature, e.violations)
            raise

        await self._record(
            actor_id, group_id, profile, result.usage, latency_ms,
            success=True,
            request_summary=prompt,
            response_summary=summarize_value(schema, data)
        )
        return StructuredResult(
            data=data,
            usage=result.usage,
            model=profile.model_id,
            latency_ms=latency_ms
        )

    async def stream_text(
        self,
        actor_id: str,
        group_id: str,
        feature: str,
        messages: List[Dict[str, str]],
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        skip_admission: bool = False,
        on_finish: Optional[Callable[[TokenUsage, str], Any]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> UsageStream:
        """Admit a streamed generation and return its stream.

        The provider is called when iteration starts. The ledger record is
        written when the stream ends, after which on_finish(usage, text)
        runs; if it returns an awaitable, that is awaited.

        Raises:
            ConfigurationError: Provider not configured
            AdmissionDenied: Rate limit or token budget exceeded
        """
        profile = await self._preflight(actor_id, group_id, feature, skip_admission)
        request = self._build_request(profile, temperature, max_tokens, system_prompt=system_prompt, messages=messages)
        last_user = next((m["content"] for m in reversed(messages) if m.get("role") == "user"), None)
        timing = {}

        def open_stream() -> AsyncIterator[StreamChunk]:
            timing["started"] = self.clock.monotonic()
            return self.provider.stream(request)

        async def finalize(outcome: StreamOutcome) -> TokenUsage:
            latency_ms = self._elapsed_ms(timing["started"])
            if outcome.status is StreamStatus.FAILED:
                error_message = str(outcome.error) or type(outcome.error).__name__
                logger.error("AI stream error in %s: %s", feature, error_message)
            elif outcome.status is StreamStatus.CANCELLED:
                error_message = STREAM_CANCELLED_MESSAGE
            else:
                error_message = None

            await self._record(
                actor_id, group_id, profile, outcome.usage, latency_ms,
                success=outcome.status is not StreamStatus.FAILED,
                error_message=error_message,
                request_summary=last_user,
                response_summary=outcome.text or None
            )
            if on_finish is not None and outcome.status is not StreamStatus.FAILED:
                callback_result = on_finish(outcome.usage, outcome.text)
                if inspect.isawaitable(callback_result):
                    await callback_result
            return outcome.usage

        return UsageStream(open_stream, finalize, cancel_token=cancel_token, feature=feature)

    async def _preflight(
        self,
        actor_id: str,
        group_id: str,
        feature: str,
        skip_admission: bool
    ) -> FeatureProfile:
        ready = self.check_ai_ready()
        if not ready.ready:
            raise ConfigurationError(ready.reason)

        profile = get_feature_settings(feature)

        if not skip_admission:
            decision = await self.admission.check_all(actor_id, group_id)
            if not decision.allowed:
                logger.info(
                    "Admission denied for actor %s (group %s) on %s: %s",
                    actor_id, group_id, feature, decision.reason,
                    extra={
                        "actor_id": actor_id,
                        "group_id": group_id,
                        "feature": feature,
                        "reason": decision.reason,
                    }
                )
                raise AdmissionDenied(decision)
        return profile

    @staticmethod
    def _build_request(
        profile: FeatureProfile,
        temperature: Optional[float],
        max_tokens: Optional[int],
        system_prompt: Optional[str] = None,
        prompt: Optional[str] = None,
        messages: Optional[List[Dict[str, str]]] = None
    ) -> ProviderRequest:
        return ProviderRequest(
            model=profile.model_id,
            temperature=profile.temperature if temperature is None else temperature,
            max_tokens=profile.max_tokens if max_tokens is None else max_tokens,
            system_prompt=system_prompt,
            prompt=prompt,
            messages=list(messages or [])
        )

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int(round((self.clock.monotonic() - started) * 1000)))

    async def _record_failure(
        self,
        actor_id: str,
        group_id: str,
        profile: FeatureProfile,
        started: float,
        error: BaseException,
        request_summary: Optional[str] = None
    ) -> None:
        error_message = str(error) or type(error).__name__
        logger.error("AI service error in %s: %s", profile.feature_name, error_message)
        await self._record(
            actor_id, group_id, profile, TokenUsage(), self._elapsed_ms(started),
            success=False,
            error_message=error_message,
            request_summary=request_summary
        )

    async def _record(
        self,
        actor_id: str,
        group_id: str,
        profile: FeatureProfile,
        usage: TokenUsage,
        latency_ms: int,
        success: bool,
        error_message: Optional[str] = None,
        request_summary: Optional[str] = None,
        response_summary: Optional[str] = None
    ) -> UsageRecord:
        cost_cents = calculate_cost(profile.model_id, usage.prompt_tokens, usage.completion_tokens)
        record = UsageRecord(
            actor_id=actor_id,
            group_id=group_id,
            feature=profile.feature_name,
            endpoint=f"/api/ai/{profile.feature_name}",
            model=profile.model_id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost_cents=cost_cents,
            latency_ms=latency_ms,
            success=success,
            error_message=error_message,
            request_summary=_truncate(request_summary, self.summary_length),
            response_summary=_truncate(response_summary, self.summary_length),
            timestamp=self.clock.now()
        )
        await self.repository.insert_usage_record(record)
        logger.info(
            "AI usage: feature=%s tokens=%d cost=%.4f cents success=%s",
            record.feature, record.total_tokens, cost_cents, success,
            extra={
                "actor_id": actor_id,
                "group_id": group_id,
                "feature": record.feature,
                "total_tokens": record.total_tokens,
            }
        )
        return record

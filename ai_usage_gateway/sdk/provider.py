"""
Model provider boundary.

The gateway talks to models only through ModelProvider. OpenAIProvider
implements it with the async OpenAI client.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI

from ..config.loader import ProviderSettings, load_provider_settings
from ..core.token_counter import TokenUsage


@dataclass(frozen=True)
class ProviderRequest:
    """One generation call as the provider sees it."""
    model: str
    temperature: float
    max_tokens: int
    system_prompt: Optional[str] = None
    prompt: Optional[str] = None
    messages: List[Dict[str, str]] = field(default_factory=list)

    def to_messages(self) -> List[Dict[str, str]]:
        """Chat messages with the system prompt first and the prompt last."""
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(self.messages)
        if self.prompt is not None:
            messages.append({"role": "user", "content": self.prompt})
        return messages


@dataclass(frozen=True)
class ProviderResult:
    """Completed generation with the usage the provider reported."""
    text: str
    usage: TokenUsage
    response_id: Optional[str] = None


@dataclass(frozen=True)
class StreamChunk:
    """A text delta, or the final usage report of a stream."""
    text: str = ""
    usage: Optional[TokenUsage] = None


class ModelProvider:
    """Interface to a generative model service."""

    @property
    def is_configured(self) -> bool:
        return True

    async def generate(self, request: ProviderRequest) -> ProviderResult:
        """Generate a complete text response."""
        raise NotImplementedError

    async def generate_json(
        self,
        request: ProviderRequest,
        schema_name: str,
        json_schema: Dict[str, Any]
    ) -> ProviderResult:
        """Generate JSON text intended to match json_schema."""
        raise NotImplementedError

    def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        """Stream text deltas, ending with a usage chunk when available."""
        raise NotImplementedError


class OpenAIProvider(ModelProvider):
    """ModelProvider backed by OpenAI chat completions.

    The client is created on first use so an unconfigured provider can be
    constructed and checked without raising.
    """

    def __init__(self, settings: Optional[ProviderSettings] = None, client: Optional[AsyncOpenAI] = None):
        """Initialize the provider.

        Args:
            settings: Credentials (defaults to the environment)
            client: Preconstructed client, mainly for tests
        """
        self.settings = settings or load_provider_settings()
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self._client is not None or self.settings.is_configured

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.api_key,
                organization=self.settings.organization
            )
        return self._client

    async def generate(self, request: ProviderRequest) -> ProviderResult:
        response = await self.client.chat.completions.create(
            model=request.model,
            messages=request.to_messages(),
            temperature=request.temperature,
            max_tokens=request.max_tokens
        )
        return self._to_result(response)

    async def generate_json(
        self,
        request: ProviderRequest,
        schema_name: str,
        json_schema: Dict[str, Any]
    ) -> ProviderResult:
        response = await self.client.chat.completions.create(
            model=request.model,
            messages=request.to_messages(),
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            response_format={
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": json_schema},
            }
        )
        return self._to_result(response)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        response = await self.client.chat.completions.create(
            model=request.model,
            messages=request.to_messages(),
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            stream=True,
            stream_options={"include_usage": True}
        )
        try:
            async for chunk in response:
                if chunk.choices:
                    delta = chunk.choices[0].delta.content
                    if delta:
                        yield StreamChunk(text=delta)
                if chunk.usage is not None:
                    yield StreamChunk(usage=TokenUsage.from_counts(
                        chunk.usage.prompt_tokens, chunk.usage.completion_tokens
                    ))
        finally:
            await response.close()

    @staticmethod
    def _to_result(response: Any) -> ProviderResult:
        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")
        return ProviderResult(
            text=response.choices[0].message.content or "",
            usage=TokenUsage.from_counts(usage.prompt_tokens, usage.completion_tokens),
            response_id=response.id
        )

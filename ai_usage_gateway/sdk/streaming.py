"""
Streamed generation with guaranteed usage accounting.

A UsageStream writes exactly one ledger record however the stream ends:
completion, provider failure, cancellation through its token, task
cancellation, or the consumer leaving early. Cancellation is observed
between chunks.

A stream dropped mid-iteration without aclose() is finalized when it is
garbage collected: the record is written by a task scheduled on the
running loop.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Set

from ..core.errors import ProviderError
from ..core.token_counter import TokenUsage
from .provider import StreamChunk

logger = logging.getLogger(__name__)

# finalizers for abandoned streams; the loop only holds tasks weakly
_abandoned_finalizers: Set[asyncio.Task] = set()


def _finalizer_done(task: asyncio.Task) -> None:
    _abandoned_finalizers.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Failed to record abandoned stream", exc_info=task.exception())


class CancellationToken:
    """Caller-held switch that stops a stream at the next chunk."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class StreamStatus(enum.Enum):
    """How a stream ended."""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StreamOutcome:
    """What the stream consumed, handed to the finalizer once."""
    status: StreamStatus
    usage: TokenUsage
    text: str
    error: Optional[BaseException] = None


class UsageStream:
    """Async iterator of text deltas from one provider stream.

    Usage:
        async with await gateway.stream_text(...) as stream:
            async for delta in stream:
                ...
    """

    def __init__(
        self,
        open_stream: Callable[[], AsyncIterator[StreamChunk]],
        finalize: Callable[[StreamOutcome], Awaitable[TokenUsage]],
        cancel_token: Optional[CancellationToken] = None,
        feature: Optional[str] = None
    ):
        """Initialize an unopened stream.

        Args:
            open_stream: Starts the provider call; invoked on first iteration
            finalize: Records the outcome and returns the usage it recorded
            cancel_token: Shared token; a private one is created if omitted
            feature: Feature name for error reporting
        """
        self._open_stream = open_stream
        self._finalize = finalize
        self.cancel_token = cancel_token or CancellationToken()
        self.feature = feature
        self._chunks: Optional[AsyncIterator[StreamChunk]] = None
        self._started = False
        self._finished = False
        self._parts: List[str] = []
        self._deltas = 0
        self._reported_usage: Optional[TokenUsage] = None
        self.status: Optional[StreamStatus] = None
        self.usage: Optional[TokenUsage] = None

    @property
    def text(self) -> str:
        """Text received so far."""
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self._finished

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def __aiter__(self) -> "UsageStream":
        if self._started:
            raise RuntimeError("UsageStream can only be iterated once")
        self._started = True
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration

        if self._chunks is None:
            if self.cancel_token.cancelled:
                # cancelled before the provider was called: nothing to record
                self._finished = True
                raise StopAsyncIteration
            self._chunks = self._open_stream()

        while True:
            if self.cancel_token.cancelled:
                await self._finish(StreamStatus.CANCELLED)
                raise StopAsyncIteration

            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                break
            except asyncio.CancelledError:
                await self._finish(StreamStatus.CANCELLED)
                raise
            except Exception as e:
                await self._finish(StreamStatus.FAILED, error=e)
                raise ProviderError(str(e) or type(e).__name__, self.feature) from e

            if chunk.usage is not None:
                self._reported_usage = chunk.usage
            if chunk.text:
                self._parts.append(chunk.text)
                self._deltas += 1
                return chunk.text

        await self._finish(StreamStatus.COMPLETED)
        raise StopAsyncIteration

    async def __aenter__(self) -> "UsageStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the stream and make sure its usage is recorded."""
        if self._chunks is None:
            # the provider was never called, so there is nothing to record
            self._finished = True
            return
        await self._finish(StreamStatus.CANCELLED)

    async def collect(self) -> str:
        """Consume the whole stream and return its text."""
        async for _ in self:
            pass
        return self.text

    def __del__(self):
        if getattr(self, "_chunks", None) is None or getattr(self, "_finished", True):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Stream for %s abandoned outside an event loop; usage not recorded", self.feature
            )
            return
        task = loop.create_task(self._finish(StreamStatus.CANCELLED))
        _abandoned_finalizers.add(task)
        task.add_done_callback(_finalizer_done)

    def _consumed_usage(self) -> TokenUsage:
        if self._reported_usage is not None:
            return self._reported_usage
        # no usage report yet: count one completion token per delta received
        return TokenUsage(prompt_tokens=0, completion_tokens=self._deltas)

    async def _finish(self, status: StreamStatus, error: Optional[BaseException] = None) -> None:
        if self._finished:
            return
        self._finished = True
        self.status = status

        usage = TokenUsage() if status is StreamStatus.FAILED else self._consumed_usage()
        try:
            if status is not StreamStatus.COMPLETED:
                await self._close_chunks()
        finally:
            self.usage = await self._finalize(StreamOutcome(
                status=status,
                usage=usage,
                text=self.text,
                error=error
            ))

    async def _close_chunks(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()

"""
Completion Translator: protocol requests in, provider calls out, protocol shapes back.

Two entry points:
  - create_completion()        — runs the provider to completion and returns one
                                 ChatCompletionResponse.
  - create_completion_stream() — returns a CompletionStream, a lazy single-pass
                                 async iterator of ChatCompletionChunk.

Streaming design:
  - A producer task invokes the provider and pushes chunks onto a bounded
    asyncio.Queue; the consumer (the HTTP writer) pulls from it. The producer
    only starts on the first pull, and each stream re-invokes the provider.
  - Chunk order is fixed: one role-only chunk, one chunk per provider fragment
    (fragment boundaries preserved verbatim), one empty-delta chunk with
    finish_reason="stop".
  - Closing the stream cancels the request's CancellationToken and the producer
    task, so the provider stops generating. Chunks already delivered stay delivered.
  - A provider failure ends the stream: no further chunks, and the ProviderError
    is raised from the consumer's next pull.

Token usage is an estimate (characters / 4, rounded up), not a tokenizer count.
"""

import asyncio
import math
import random
import string
import time
from contextlib import aclosing, nullcontext
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from loguru import logger

from .errors import ProviderError
from .providers import (
    ASSISTANT,
    USER,
    CancellationToken,
    ChatTurn,
    ModelProvider,
    ModelProviderError,
)
from .registry import ModelRegistry
from .schemas import (
    ChatCompletionChoice,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    DeltaContent,
    StreamChoice,
    UsageInfo,
)

# Bounded so a stalled HTTP writer applies backpressure to the provider.
STREAM_QUEUE_SIZE = 16

_ID_ALPHABET = string.ascii_lowercase + string.digits
_END = object()
_last_created = 0


def generate_id() -> str:
    return "chatcmpl-" + "".join(random.choices(_ID_ALPHABET, k=13))


def unix_now() -> int:
    """Current unix seconds, never lower than a previously returned value."""
    global _last_created
    _last_created = max(_last_created, int(time.time()))
    return _last_created


def estimate_tokens(texts: list[str]) -> int:
    """Rough token count: joined character length / 4, rounded up."""
    return math.ceil(len(" ".join(texts)) / 4)


def to_provider_turns(messages: list[ChatMessage]) -> list[ChatTurn]:
    """Map protocol messages onto provider turns.

    The provider knows only user and assistant turns, so system messages are
    sent as user turns. Order is preserved.
    """
    return [
        ChatTurn(role=ASSISTANT if msg.role == "assistant" else USER, content=msg.content)
        for msg in messages
    ]


def _closing(fragments: AsyncIterator[str]):
    if hasattr(fragments, "aclose"):
        return aclosing(fragments)
    return nullcontext(fragments)


def _provider_error(e: ModelProviderError) -> ProviderError:
    message = f"Language model error: {e.message}"
    if e.code is not None:
        message += f" ({e.code})"
    return ProviderError(message, code=e.code)


class CompletionStream:
    """Single-pass async iterator of chunks, fed by a producer task through a queue.

    Args:
        produce: Coroutine function called as produce(emit, cancellation). It must
                 await emit(chunk) for each chunk, in order.
        maxsize: Queue bound between producer and consumer.
    """

    def __init__(
        self,
        produce: Callable[[Callable[[Any], Awaitable[None]], CancellationToken], Awaitable[None]],
        maxsize: int = STREAM_QUEUE_SIZE,
    ):
        self._produce = produce
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self.cancellation = CancellationToken()

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> ChatCompletionChunk:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._run())

        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, Exception):
            self._finished = True
            raise item
        return item

    async def _run(self) -> None:
        try:
            await self._produce(self._queue.put, self.cancellation)
        except Exception as e:
            await self._queue.put(e)
        else:
            await self._queue.put(_END)

    async def aclose(self) -> None:
        """Stop the stream and cancel the in-flight provider call. Safe to call twice."""
        self._finished = True
        self.cancellation.cancel()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class CompletionTranslator:
    """Bridges protocol requests to a Model Provider Capability.

    The registry must be initialized before requests are translated; the gateway
    takes care of that.
    """

    def __init__(self, provider: ModelProvider, registry: ModelRegistry,
                 queue_size: int = STREAM_QUEUE_SIZE):
        self.provider = provider
        self.registry = registry
        self.queue_size = queue_size

    async def create_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """Run a buffered completion.

        Args:
            request: The validated protocol request.

        Returns:
            ChatCompletionResponse: One choice with finish_reason="stop" and
                                    estimated usage.

        Raises:
            NoModelsAvailable: If the registry holds no models.
            ProviderError: If the provider rejects or fails the generation.
        """
        model = self.registry.select_model(request.model)
        turns = to_provider_turns(request.messages)
        cancellation = CancellationToken()
        logger.info(f"Completion: model={model.identifier}, messages={len(turns)}")

        parts = []
        try:
            fragments = await self.provider.invoke(model, turns, cancellation)
            async with _closing(fragments):
                async for fragment in fragments:
                    parts.append(fragment)
        except ModelProviderError as e:
            logger.error(f"Provider error: {e.message} ({e.code})")
            raise _provider_error(e) from e
        except asyncio.CancelledError:
            cancellation.cancel()
            raise

        content = "".join(parts)
        prompt_tokens = estimate_tokens([m.content for m in request.messages])
        completion_tokens = estimate_tokens([content])
        return ChatCompletionResponse(
            id=generate_id(),
            created=unix_now(),
            model=model.identifier,
            choices=[
                ChatCompletionChoice(
                    message=ChatMessage(role="assistant", content=content),
                    finish_reason="stop",
                )
            ],
            usage=UsageInfo(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    def create_completion_stream(self, request: ChatCompletionRequest) -> CompletionStream:
        """Build a lazy chunk stream for the request. Nothing runs until the first pull.

        Raises:
            NoModelsAvailable: If the registry holds no models.
        """
        model = self.registry.select_model(request.model)
        turns = to_provider_turns(request.messages)
        completion_id = generate_id()
        created = unix_now()
        logger.info(f"Streaming completion: model={model.identifier}, messages={len(turns)}")

        def chunk(delta: DeltaContent, finish_reason: Optional[str] = None) -> ChatCompletionChunk:
            return ChatCompletionChunk(
                id=completion_id,
                created=created,
                model=model.identifier,
                choices=[StreamChoice(delta=delta, finish_reason=finish_reason)],
            )

        async def produce(emit, cancellation: CancellationToken) -> None:
            try:
                fragments = await self.provider.invoke(model, turns, cancellation)
                async with _closing(fragments):
                    await emit(chunk(DeltaContent(role="assistant")))
                    async for fragment in fragments:
                        await emit(chunk(DeltaContent(content=fragment)))
                await emit(chunk(DeltaContent(), finish_reason="stop"))
            except ModelProviderError as e:
                logger.error(f"Provider error during stream: {e.message} ({e.code})")
                raise _provider_error(e) from e

        return CompletionStream(produce, maxsize=self.queue_size)


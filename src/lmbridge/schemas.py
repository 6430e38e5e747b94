"""
OpenAI-compatible request/response Pydantic models.

Defines the wire format spoken by the gateway. Any client that uses the OpenAI
SDK can point its base_url at lmbridge and exchange these shapes unchanged.

Models are organized into:
  - Request models: ChatMessage, ChatCompletionRequest
  - Non-streaming response: ChatCompletionResponse, ChatCompletionChoice, UsageInfo
  - Streaming response: ChatCompletionChunk, StreamChoice, DeltaContent
  - Model listing: ModelObject, ModelListResponse
"""

import json
from typing import Literal, Optional

from pydantic import BaseModel, Field


# ── Request ──────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    """A single message in a chat conversation.

    Attributes:
        role: The message author's role ("system", "user", or "assistant").
        content: The text content of the message.
    """
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    """Incoming chat completion request (OpenAI-compatible).

    Sampling parameters are accepted for compatibility only; the provider is free
    to ignore them.

    Attributes:
        model: Model identifier ("vendor-family" or a bare family). None selects
               the first discovered model.
        messages: The conversation history, in order. Must not be empty.
        temperature: Advisory sampling temperature.
        max_tokens: Advisory completion length limit.
        top_p: Advisory nucleus sampling value.
        stream: Whether to stream the response as SSE events. Defaults to False.
    """
    model: Optional[str] = None
    messages: list[ChatMessage] = Field(min_length=1)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stream: bool = False


# ── Response (non-streaming) ─────────────────────────────────────────

class UsageInfo(BaseModel):
    """Estimated token usage (characters / 4, not a real tokenizer)."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionChoice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: str = "stop"


class ChatCompletionResponse(BaseModel):
    """Complete non-streaming chat completion response (OpenAI-compatible).

    Attributes:
        id: Unique identifier for this completion (e.g., "chatcmpl-abc123").
        object: Always "chat.completion".
        created: Unix timestamp of when the completion was created.
        model: The resolved "vendor-family" identifier that generated the response.
        choices: Always exactly one choice.
        usage: Estimated token counts.
    """
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[ChatCompletionChoice]
    usage: UsageInfo


# ── Response (streaming) ─────────────────────────────────────────────

class DeltaContent(BaseModel):
    """A partial assistant message carried by one streaming chunk.

    The first chunk carries only the role, content chunks carry only content, and
    the terminal chunk carries neither. Unset fields are left out of the JSON.
    """
    role: Optional[Literal["assistant"]] = None
    content: Optional[str] = None


class StreamChoice(BaseModel):
    index: int = 0
    delta: DeltaContent
    finish_reason: Optional[str] = None


class ChatCompletionChunk(BaseModel):
    """A single streaming chunk, sent as the data field of an SSE event.

    All chunks of one response share the same id and created values.
    """
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[StreamChoice]

    def to_json(self) -> str:
        """Serialize for the wire, dropping unset delta fields but keeping finish_reason."""
        data = self.model_dump()
        for choice, raw in zip(self.choices, data["choices"]):
            raw["delta"] = choice.delta.model_dump(exclude_none=True)
        return _dumps(data)


# ── Models list ──────────────────────────────────────────────────────

class ModelObject(BaseModel):
    """A single model entry in the models list response.

    Attributes:
        id: The "vendor-family" model identifier.
        object: Always "model".
        created: Unix timestamp at listing time.
        owned_by: Fixed provider label for this server.
    """
    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str = "lmbridge"


class ModelListResponse(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelObject]


def _dumps(data: dict) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))

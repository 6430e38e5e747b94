"""
Model Provider Capability: the contract lmbridge consumes.

A provider enumerates the models it can serve and, given a model and an ordered
list of user/assistant turns, produces an asynchronous sequence of text fragments.
lmbridge never assumes a concrete provider; anything with this shape will do
(see `lmbridge.ollama.OllamaProvider` for the bundled one).
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

# Turn roles understood by providers. There is no separate system turn.
USER = "user"
ASSISTANT = "assistant"


@dataclass(frozen=True)
class ModelHandle:
    """A model offered by a provider, named by vendor and family.

    Attributes:
        vendor: Provider-assigned vendor label (e.g., "ollama").
        family: Provider-assigned family label (e.g., "llama3:8b").
    """
    vendor: str
    family: str

    @property
    def identifier(self) -> str:
        """The composite "vendor-family" name used on the HTTP surface."""
        return f"{self.vendor}-{self.family}"


@dataclass(frozen=True)
class ChatTurn:
    role: str  # USER or ASSISTANT
    content: str


class CancellationToken:
    """Per-request cancellation handle shared between the gateway and the provider.

    Providers poll `cancelled` between fragments or await `wait()` to stop early.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ModelProviderError(Exception):
    """A provider-specific failure (quota, auth, rejected request, broken stream).

    Attributes:
        message: The provider's error message.
        code: The provider's error code, if it has one.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ModelProvider(Protocol):
    async def discover(self, vendor: Optional[str] = None) -> list[ModelHandle]:
        """Return available models, restricted to `vendor` when given."""
        ...

    async def invoke(
        self,
        model: ModelHandle,
        turns: list[ChatTurn],
        cancellation: CancellationToken,
    ) -> AsyncIterator[str]:
        """Start a generation and return its text fragments.

        Raises ModelProviderError if the request is rejected up front; the returned
        iterator may also raise it while fragments are being produced.
        """
        ...

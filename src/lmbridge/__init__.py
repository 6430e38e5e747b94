"""
lmbridge — an OpenAI-compatible chat-completion gateway for any model provider.

Discovers the models a provider offers, translates OpenAI-style chat requests into
provider calls, and serves buffered JSON or SSE-streamed completions over HTTP.

Public API:
    from lmbridge import CompletionTranslator, ModelRegistry, OllamaProvider, create_app

    provider = OllamaProvider()
    registry = ModelRegistry(provider)
    app = create_app(CompletionTranslator(provider, registry))
"""

from .ollama import OllamaProvider
from .registry import ModelRegistry
from .server import GatewayServer, create_app
from .translator import CompletionTranslator

__all__ = ["CompletionTranslator", "GatewayServer", "ModelRegistry", "OllamaProvider", "create_app"]

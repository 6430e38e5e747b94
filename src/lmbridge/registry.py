"""Discovery, caching and lenient selection of provider models."""

import asyncio
from typing import Optional

from loguru import logger

from .errors import NoModelsAvailable
from .providers import ModelHandle, ModelProvider, ModelProviderError

DEFAULT_VENDOR = "ollama"


class ModelRegistry:
    """Knows which models are usable and resolves a requested name to one.

    The cached list is replaced wholesale by `initialize()`, so concurrent readers
    see either the old list or the new one, never a partial one.

    Attributes:
        provider: The Model Provider Capability to discover models from.
        default_vendor: Vendor queried first; any vendor is tried if it has no models.
    """

    def __init__(self, provider: ModelProvider, default_vendor: Optional[str] = DEFAULT_VENDOR):
        self.provider = provider
        self.default_vendor = default_vendor
        self._models: tuple[ModelHandle, ...] = ()
        self._init_lock = asyncio.Lock()

    @property
    def models(self) -> tuple[ModelHandle, ...]:
        return self._models

    @property
    def initialized(self) -> bool:
        return bool(self._models)

    async def initialize(self) -> None:
        """Query the provider and replace the cached model list.

        Tries the default vendor first, then any vendor. Calling it again refreshes
        the cache.

        Raises:
            NoModelsAvailable: If both queries come back empty or discovery fails.
        """
        try:
            models = []
            if self.default_vendor:
                models = list(await self.provider.discover(self.default_vendor))
            if not models:
                if self.default_vendor:
                    logger.info(f"No '{self.default_vendor}' models, trying any vendor")
                models = list(await self.provider.discover())
        except ModelProviderError as e:
            logger.error(f"Model discovery failed: {e.message}")
            raise NoModelsAvailable(f"No language models available: {e.message}") from e

        if not models:
            raise NoModelsAvailable(
                "No language models available. Make sure the model provider is running "
                "and has at least one model installed."
            )

        self._models = tuple(models)
        logger.info(f"Initialized with {len(models)} language model(s)")

    async def ensure_initialized(self) -> None:
        """Run discovery once if the cache is empty. Concurrent callers share one run."""
        if self._models:
            return
        async with self._init_lock:
            if not self._models:
                await self.initialize()

    def list_models(self) -> list[str]:
        """Composite identifiers of all cached models, in discovery order."""
        return [model.identifier for model in self._models]

    def select_model(self, name: Optional[str] = None) -> ModelHandle:
        """Resolve a requested model name to a cached model.

        Matching order: exact "vendor-family" identifier, then bare family label.
        Unknown names fall back to the first model without raising.

        Raises:
            NoModelsAvailable: Only if the registry holds no models at all.
        """
        models = self._models
        if not models:
            raise NoModelsAvailable("No language models available. The registry is not initialized.")
        if not name:
            return models[0]

        for model in models:
            if model.identifier == name:
                return model
        for model in models:
            if model.family == name:
                return model

        logger.debug(f"Unknown model '{name}', falling back to {models[0].identifier}")
        return models[0]

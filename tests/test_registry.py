"""Unit tests for model discovery and lenient model selection."""

import asyncio

import pytest

from lmbridge.errors import NoModelsAvailable
from lmbridge.providers import ModelHandle, ModelProviderError
from lmbridge.registry import ModelRegistry

from conftest import FakeProvider


def _registry(models, default_vendor="ollama"):
    provider = FakeProvider(models=models)
    registry = ModelRegistry(provider, default_vendor=default_vendor)
    asyncio.run(registry.initialize())
    return registry


class TestInitialize:

    def test_prefers_default_vendor(self):
        registry = _registry([ModelHandle("acme", "fast"), ModelHandle("ollama", "llama3:8b")])
        assert registry.list_models() == ["ollama-llama3:8b"]
        assert registry.provider.discover_calls == ["ollama"]

    def test_falls_back_to_any_vendor(self):
        registry = _registry([ModelHandle("acme", "fast"), ModelHandle("acme", "slow")])
        assert registry.list_models() == ["acme-fast", "acme-slow"]
        assert registry.provider.discover_calls == ["ollama", None]

    def test_no_default_vendor_queries_once(self):
        registry = _registry([ModelHandle("acme", "fast")], default_vendor=None)
        assert registry.provider.discover_calls == [None]

    def test_no_models_raises(self):
        registry = ModelRegistry(FakeProvider(models=[]))
        with pytest.raises(NoModelsAvailable):
            asyncio.run(registry.initialize())
        assert not registry.initialized

    def test_discovery_failure_raises_no_models(self):
        provider = FakeProvider()

        async def broken(vendor=None):
            raise ModelProviderError("connection refused", code="upstream_unavailable")

        provider.discover = broken
        registry = ModelRegistry(provider)
        with pytest.raises(NoModelsAvailable, match="connection refused"):
            asyncio.run(registry.initialize())

    def test_reinitialize_refreshes_cache(self):
        registry = _registry([ModelHandle("acme", "fast")])
        registry.provider.models = [ModelHandle("acme", "new")]
        asyncio.run(registry.initialize())
        assert registry.list_models() == ["acme-new"]

    def test_ensure_initialized_discovers_once(self):
        provider = FakeProvider()
        registry = ModelRegistry(provider, default_vendor=None)

        async def run():
            await asyncio.gather(*(registry.ensure_initialized() for _ in range(5)))
            await registry.ensure_initialized()

        asyncio.run(run())
        assert provider.discover_calls == [None]
        assert registry.initialized


class TestListModels:

    def test_discovery_order_not_sorted(self):
        registry = _registry([ModelHandle("zeta", "b"), ModelHandle("alpha", "a")])
        assert registry.list_models() == ["zeta-b", "alpha-a"]


class TestSelectModel:

    @pytest.fixture
    def registry(self):
        return _registry([
            ModelHandle("acme", "fast"),
            ModelHandle("other", "acme-slow"),
            ModelHandle("acme", "slow"),
        ])

    def test_no_name_returns_first(self, registry):
        assert registry.select_model().identifier == "acme-fast"
        assert registry.select_model(None).identifier == "acme-fast"

    def test_exact_identifier(self, registry):
        assert registry.select_model("acme-slow") == ModelHandle("acme", "slow")

    def test_family_label(self, registry):
        assert registry.select_model("fast") == ModelHandle("acme", "fast")

    def test_identifier_wins_over_earlier_family_match(self, registry):
        # "other-acme-slow" has family "acme-slow", but "acme-slow" is an exact identifier
        assert registry.select_model("acme-slow").vendor == "acme"

    def test_unknown_name_falls_back_to_first(self, registry):
        assert registry.select_model("nonexistent-name").identifier == "acme-fast"

    def test_empty_registry_raises(self):
        registry = ModelRegistry(FakeProvider())
        with pytest.raises(NoModelsAvailable):
            registry.select_model("anything")

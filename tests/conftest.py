"""
Pytest configuration for lmbridge tests.

Registers custom markers:
    network: Tests that open a real loopback socket

Shared fixtures provide a scripted in-memory model provider so the registry,
translator and gateway can be exercised without a real model server.

Usage:
    pytest tests/ -v                    # Run all tests
    pytest tests/ -v -m "not network"   # Skip tests that bind sockets
"""

import pytest
import sse_starlette.sse

from lmbridge.providers import ModelHandle, ModelProviderError
from lmbridge.registry import ModelRegistry
from lmbridge.server import create_app
from lmbridge.translator import CompletionTranslator


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers", "network: marks tests that bind a real loopback socket"
    )


class FakeProvider:
    """Scripted ModelProvider.

    Attributes:
        models: Models returned by discover(), filtered by vendor.
        fragments: Text fragments every generation yields, in order.
        invoke_error: Raised by invoke() before any fragment, if set.
        fail_after: Raise a ModelProviderError after this many fragments, if set.
        hang: After the last fragment, wait until the request is cancelled.
    """

    def __init__(self, models=None, fragments=("Hi ", "there!")):
        self.models = list(models if models is not None else [ModelHandle("acme", "fast")])
        self.fragments = list(fragments)
        self.invoke_error = None
        self.fail_after = None
        self.hang = False
        self.discover_calls = []
        self.invocations = []
        self.yielded = 0
        self.closed_generations = 0
        self.closed = False

    async def discover(self, vendor=None):
        self.discover_calls.append(vendor)
        return [m for m in self.models if vendor is None or m.vendor == vendor]

    async def invoke(self, model, turns, cancellation):
        self.invocations.append((model, list(turns), cancellation))
        if self.invoke_error is not None:
            raise self.invoke_error
        return self._generate(cancellation)

    async def _generate(self, cancellation):
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i == self.fail_after:
                    raise ModelProviderError("quota exceeded", code="quota")
                self.yielded += 1
                yield fragment
            if self.fail_after is not None and self.fail_after >= len(self.fragments):
                raise ModelProviderError("quota exceeded", code="quota")
            if self.hang:
                await cancellation.wait()
        finally:
            self.closed_generations += 1

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_sse_app_status():
    """sse-starlette keeps a process-wide exit event bound to the first event loop."""
    if hasattr(sse_starlette.sse, "AppStatus"):
        sse_starlette.sse.AppStatus.should_exit_event = None
    yield
    if hasattr(sse_starlette.sse, "AppStatus"):
        sse_starlette.sse.AppStatus.should_exit_event = None


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry(provider):
    return ModelRegistry(provider)


@pytest.fixture
def translator(provider, registry):
    return CompletionTranslator(provider, registry)


@pytest.fixture
def app(translator):
    return create_app(translator)

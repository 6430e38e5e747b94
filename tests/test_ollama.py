"""Tests for the Ollama provider against a mocked HTTP transport."""

import asyncio
import json

import httpx
import pytest

from lmbridge.ollama import OllamaProvider
from lmbridge.providers import CancellationToken, ChatTurn, ModelHandle, ModelProviderError

TAGS = {"models": [{"name": "llama3:8b"}, {"name": "qwen2.5:7b"}]}


def _ndjson(*lines) -> bytes:
    return b"".join(json.dumps(line).encode() + b"\n" for line in lines)


def _provider(handler) -> OllamaProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaProvider("http://ollama.test/", client=client)


async def _generate(provider, turns=None, cancellation=None) -> list[str]:
    fragments = await provider.invoke(
        ModelHandle("ollama", "llama3:8b"),
        turns or [ChatTurn("user", "Hello!")],
        cancellation or CancellationToken(),
    )
    return [f async for f in fragments]


class TestDiscover:

    def test_lists_installed_models(self):
        def handler(request):
            assert request.url == "http://ollama.test/api/tags"
            return httpx.Response(200, json=TAGS)

        models = asyncio.run(_provider(handler).discover())
        assert models == [ModelHandle("ollama", "llama3:8b"), ModelHandle("ollama", "qwen2.5:7b")]
        assert models[0].identifier == "ollama-llama3:8b"

    def test_matching_vendor_filter(self):
        models = asyncio.run(_provider(lambda r: httpx.Response(200, json=TAGS)).discover("ollama"))
        assert len(models) == 2

    def test_other_vendor_has_no_models(self):
        def handler(request):
            raise AssertionError("should not be called")

        assert asyncio.run(_provider(handler).discover("copilot")) == []

    def test_unreachable_server(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ModelProviderError) as info:
            asyncio.run(_provider(handler).discover())
        assert info.value.code == "upstream_unavailable"


    def test_malformed_model_list(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>proxy error</html>")

        with pytest.raises(ModelProviderError) as info:
            asyncio.run(_provider(handler).discover())
        assert info.value.code == "bad_response"


class TestInvoke:

    def test_yields_fragments_verbatim(self):
        seen = {}

        def handler(request):
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, content=_ndjson(
                {"message": {"role": "assistant", "content": "Hi "}, "done": False},
                {"message": {"role": "assistant", "content": "there!"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True},
            ))

        turns = [ChatTurn("user", "Be brief."), ChatTurn("user", "Hello!"), ChatTurn("assistant", "Hey")]
        fragments = asyncio.run(_generate(_provider(handler), turns))

        assert fragments == ["Hi ", "there!"]
        assert seen["payload"]["model"] == "llama3:8b"
        assert seen["payload"]["stream"] is True
        assert [m["role"] for m in seen["payload"]["messages"]] == ["user", "user", "assistant"]

    def test_skips_malformed_lines(self):
        body = b'{"message": {"content": "a"}}\nnot-json\n\n{"message": {"content": "b"}, "done": true}\n'
        fragments = asyncio.run(_generate(_provider(lambda r: httpx.Response(200, content=body))))
        assert fragments == ["a", "b"]

    def test_http_error_is_rejected_up_front(self):
        def handler(request):
            return httpx.Response(404, json={"error": "model 'llama3:8b' not found"})

        with pytest.raises(ModelProviderError) as info:
            asyncio.run(_provider(handler).invoke(
                ModelHandle("ollama", "llama3:8b"), [ChatTurn("user", "hi")], CancellationToken()))
        assert info.value.message == "model 'llama3:8b' not found"
        assert info.value.code == "404"

    def test_error_line_raises_mid_stream(self):
        def handler(request):
            return httpx.Response(200, content=_ndjson(
                {"message": {"content": "par"}},
                {"error": "out of memory"},
            ))

        received = []

        async def run():
            fragments = await _provider(handler).invoke(
                ModelHandle("ollama", "llama3:8b"), [ChatTurn("user", "hi")], CancellationToken())
            async for fragment in fragments:
                received.append(fragment)

        with pytest.raises(ModelProviderError, match="out of memory"):
            asyncio.run(run())
        assert received == ["par"]

    def test_cancelled_token_stops_reading(self):
        def handler(request):
            return httpx.Response(200, content=_ndjson(
                {"message": {"content": "a"}},
                {"message": {"content": "b"}},
            ))

        cancellation = CancellationToken()
        cancellation.cancel()
        assert asyncio.run(_generate(_provider(handler), cancellation=cancellation)) == []

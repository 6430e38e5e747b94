"""
Model provider backed by an Ollama server.

Discovery reads GET /api/tags; every installed model becomes a ModelHandle with
vendor "ollama" and the model name as family. Generation streams POST /api/chat,
whose body is newline-delimited JSON; each line's message.content is yielded as one
fragment, unchanged.
"""

import json
from typing import AsyncIterator, Optional

import httpx
from loguru import logger

from .providers import CancellationToken, ChatTurn, ModelHandle, ModelProviderError

DEFAULT_OLLAMA_URL = "http://localhost:11434"
VENDOR = "ollama"


class OllamaProvider:
    """Async Ollama client implementing the ModelProvider protocol.

    Attributes:
        base_url: Root URL of the Ollama server.
        client: The httpx.AsyncClient used for all calls.
    """

    vendor = VENDOR

    def __init__(self, base_url: str = DEFAULT_OLLAMA_URL, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def aclose(self):
        await self.client.aclose()

    async def discover(self, vendor: Optional[str] = None) -> list[ModelHandle]:
        if vendor is not None and vendor != self.vendor:
            return []
        try:
            resp = await self.client.get(f"{self.base_url}/api/tags")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ModelProviderError(f"Failed to list models from {self.base_url}: {e}",
                                     code="upstream_unavailable") from e

        try:
            listed = resp.json().get("models", [])
        except (ValueError, AttributeError) as e:
            raise ModelProviderError(f"Unexpected model list from {self.base_url}: {e}",
                                     code="bad_response") from e

        models = [ModelHandle(vendor=self.vendor, family=m["name"])
                  for m in listed if isinstance(m, dict) and m.get("name")]
        logger.info(f"Ollama reports {len(models)} model(s)")
        return models

    async def invoke(
        self,
        model: ModelHandle,
        turns: list[ChatTurn],
        cancellation: CancellationToken,
    ) -> AsyncIterator[str]:
        payload = {
            "model": model.family,
            "messages": [{"role": t.role, "content": t.content} for t in turns],
            "stream": True,
        }
        request = self.client.build_request("POST", f"{self.base_url}/api/chat", json=payload)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ModelProviderError(f"Ollama request failed: {e}", code="upstream_unavailable") from e

        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise ModelProviderError(_error_message(body, response.status_code),
                                     code=str(response.status_code))

        return self._fragments(response, cancellation)

    async def _fragments(self, response: httpx.Response, cancellation: CancellationToken):
        try:
            async for line in response.aiter_lines():
                if cancellation.cancelled:
                    logger.info("Generation cancelled, closing Ollama stream")
                    return
                if not line:
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Failed to parse chunk: {line[:100]}")
                    continue

                if chunk.get("error"):
                    raise ModelProviderError(str(chunk["error"]), code="generation_failed")

                content = chunk.get("message", {}).get("content", "")
                if content:
                    yield content
                if chunk.get("done"):
                    return
        except httpx.HTTPError as e:
            raise ModelProviderError(f"Ollama stream interrupted: {e}", code="stream_interrupted") from e
        finally:
            await response.aclose()


def _error_message(body: bytes, status_code: int) -> str:
    try:
        return str(json.loads(body)["error"])
    except (ValueError, KeyError, TypeError):
        text = body.decode("utf-8", errors="replace").strip()
        return text or f"HTTP {status_code}"

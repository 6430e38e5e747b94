"""
Typer CLI application for lmbridge.

Commands:
    serve    — Start the OpenAI-compatible API server
    models   — List the models the provider offers, in discovery order
    ask      — Send a single prompt through the translator and print the response
    vendor   — Show, set or clear the default vendor used for discovery
    alias    — Save a short nickname for a model
    unalias  — Remove a saved nickname

Usage:
    lmbridge serve --port 3000 --verbose
    lmbridge models
    lmbridge ask "What is the capital of France?" --model llama3:8b
    lmbridge alias fast ollama-llama3:8b
"""

import asyncio
import sys
from typing import Optional

import typer
from loguru import logger

from .config import load_config, resolve_model, save_config
from .errors import LMBridgeError
from .ollama import OllamaProvider
from .registry import ModelRegistry
from .schemas import ChatCompletionRequest, ChatMessage
from .server import GatewayServer, create_app
from .translator import CompletionTranslator

# Disable loguru output by default for clean CLI output.
# Re-enabled per-command with --verbose flag.
logger.remove()

# Fix Windows console encoding for unicode characters in model responses
if sys.stdout.encoding and sys.stdout.encoding.lower() != "utf-8":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")

app = typer.Typer(help="lmbridge: an OpenAI-compatible gateway for local language models.")


def _build(config: dict, upstream: Optional[str], vendor: Optional[str]):
    """Create provider, registry and translator from config plus CLI overrides."""
    provider = OllamaProvider(upstream or config["upstream_url"])
    registry = ModelRegistry(provider, default_vendor=vendor or config["default_vendor"])
    return provider, registry, CompletionTranslator(provider, registry)


def _fail(message: str):
    print(f"Error: {message}")
    raise typer.Exit(1)


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on (default from config: 3000)"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind to"),
    upstream: Optional[str] = typer.Option(None, "--upstream", help="Ollama server URL"),
    vendor: Optional[str] = typer.Option(None, "--vendor", help="Vendor to prefer during model discovery"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Start an OpenAI-compatible API server.

    Endpoints:
        POST /v1/chat/completions  — Chat completion (streaming + non-streaming)
        GET  /v1/models            — List available models
        GET  /health               — Health check
    """
    if verbose:
        logger.add(sys.stderr, level="INFO")

    config = load_config()
    host = host or config["host"]
    port = port if port is not None else config["port"]

    async def _serve():
        provider, _, translator = _build(config, upstream, vendor)
        server = GatewayServer(create_app(translator, config), host=host, port=port,
                               log_level="info" if verbose else "warning")
        try:
            await server.start()
            print(f"\n  lmbridge API server running on http://{host}:{server.port}")
            print(f"  OpenAI endpoint: http://{host}:{server.port}/v1/chat/completions")
            print(f"  Health check:    http://{host}:{server.port}/health\n")
            await server.wait_closed()
        finally:
            await server.stop()
            await provider.aclose()

    try:
        asyncio.run(_serve())
    except OSError as e:
        _fail(f"Failed to start server on {host}:{port}: {e}")
    except KeyboardInterrupt:
        pass
    print("  Server stopped.")


@app.command()
def models(
    upstream: Optional[str] = typer.Option(None, "--upstream", help="Ollama server URL"),
    vendor: Optional[str] = typer.Option(None, "--vendor", help="Vendor to prefer during model discovery"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """List the models the provider offers, with any saved aliases."""
    if verbose:
        logger.add(sys.stderr, level="INFO")

    config = load_config()

    async def _models() -> list[str]:
        provider, registry, _ = _build(config, upstream, vendor)
        try:
            await registry.initialize()
            return registry.list_models()
        finally:
            await provider.aclose()

    try:
        model_ids = asyncio.run(_models())
    except LMBridgeError as e:
        _fail(e.message)

    # Reverse map: model name -> saved aliases
    aliases = config.get("aliases", {})
    print("\n  Available models:\n")
    for i, model_id in enumerate(model_ids, 1):
        nicks = [nick for nick, target in aliases.items() if target == model_id]
        label = f"  [{', '.join(nicks)}]" if nicks else ""
        default = " (default)" if i == 1 else ""
        print(f"  {i:>3}. {model_id}{default}{label}")
    print()


@app.command()
def ask(
    prompt: str,
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model identifier, family or alias"),
    system: Optional[str] = typer.Option(None, "--system", "-s", help="System prompt to send first"),
    stream: bool = typer.Option(False, "--stream", help="Print the response as it is generated"),
    upstream: Optional[str] = typer.Option(None, "--upstream", help="Ollama server URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Send a prompt and print the response.

    Unknown model names fall back to the first discovered model, as on the API.
    """
    if verbose:
        logger.add(sys.stderr, level="INFO")

    config = load_config()
    messages = [ChatMessage(role="user", content=prompt)]
    if system:
        messages.insert(0, ChatMessage(role="system", content=system))
    request = ChatCompletionRequest(model=resolve_model(model, config), messages=messages, stream=stream)

    async def _ask():
        provider, registry, translator = _build(config, upstream, None)
        try:
            await registry.initialize()
            if stream:
                chunks = translator.create_completion_stream(request)
                try:
                    async for chunk in chunks:
                        content = chunk.choices[0].delta.content
                        if content:
                            print(content, end="", flush=True)
                finally:
                    await chunks.aclose()
                print()
                return

            response = await translator.create_completion(request)
            print("\n" + "=" * 40)
            print(response.choices[0].message.content)
            print("=" * 40)
            usage = response.usage
            print(f"  {response.model} · ~{usage.total_tokens} tokens "
                  f"({usage.prompt_tokens} prompt + {usage.completion_tokens} completion)\n")
        finally:
            await provider.aclose()

    try:
        asyncio.run(_ask())
    except LMBridgeError as e:
        _fail(e.message)


@app.command()
def vendor(
    name: Optional[str] = typer.Argument(None, help="Vendor to query first during discovery"),
    clear: bool = typer.Option(False, "--clear", help="Query all vendors without a preference"),
):
    """Show, set, or clear the default vendor used for model discovery."""
    config = load_config()

    if clear:
        config["default_vendor"] = None
        save_config(config)
        print("Default vendor cleared.")
        return

    if name is None:
        current = config.get("default_vendor")
        print(f"Default vendor: {current}" if current else "No default vendor set.")
        return

    config["default_vendor"] = name
    save_config(config)
    print(f"Default vendor set to: {name}")


@app.command()
def alias(
    nickname: str = typer.Argument(help="Short nickname to use as a model name"),
    target: str = typer.Argument(help="Model identifier or family the nickname stands for"),
):
    """Save a model nickname. Clients may send it as the request's model name."""
    config = load_config()
    aliases = config.get("aliases", {})
    aliases[nickname] = target
    config["aliases"] = aliases
    save_config(config)
    print(f"Saved: {nickname} -> {target}")


@app.command()
def unalias(
    nickname: str = typer.Argument(help="Nickname to remove"),
):
    """Remove a saved model nickname."""
    config = load_config()
    aliases = config.get("aliases", {})

    if nickname not in aliases:
        print(f"Nickname '{nickname}' not found.")
        raise typer.Exit(1)

    removed = aliases.pop(nickname)
    config["aliases"] = aliases
    save_config(config)
    print(f"Removed: {nickname} (was {removed})")


if __name__ == "__main__":
    app()

"""
OpenAI-compatible HTTP gateway.

Provides a Starlette application that exposes any Model Provider Capability via an
API compatible with the OpenAI client library, plus a small uvicorn wrapper that
owns the listening socket.

Endpoints:
    POST /v1/chat/completions     — Chat completion (streaming and non-streaming)
    GET  /v1/models               — List discovered models
    GET  /health                  — Health check
    OPTIONS *                     — CORS preflight (200, empty body)

Architecture:
    - Registry and translator are built by the caller and handed to create_app();
      they live on app.state, not in module globals.
    - The registry is initialized once in the app lifespan. If no models are found
      at startup, requests retry discovery until it succeeds.
    - Every response carries permissive CORS headers.
    - A buffered completion is cancelled if the client disconnects before it
      finishes.
    - Streaming responses are SSE frames "data: <json>\\n\\n", flushed one chunk at a
      time and terminated by "data: [DONE]\\n\\n". If the provider fails mid-stream,
      one error frame is written and the stream ends without the terminal chunk or
      [DONE].

Usage:
    from lmbridge.server import GatewayServer, create_app

    app = create_app(translator)
    server = GatewayServer(app, host="127.0.0.1", port=3000)
    await server.start()
"""

import asyncio
import json
import socket
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import pydantic
import uvicorn
from loguru import logger
from sse_starlette.sse import EventSourceResponse
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import resolve_model
from .errors import (
    InternalError,
    RouteNotFound,
    ServerAlreadyRunning,
    ValidationError,
    error_from_exception,
    error_payload,
    error_response,
    status_and_message,
)
from .schemas import ChatCompletionRequest, ModelListResponse, ModelObject
from .translator import CompletionTranslator, unix_now

OWNED_BY = "lmbridge"
SERVER_LABEL = "LM Bridge API"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

# sse-starlette sets Connection: keep-alive itself
SSE_HEADERS = {"Cache-Control": "no-cache"}


class CORSHeadersMiddleware:
    """Adds CORS headers to every response and answers OPTIONS before routing."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(status_code=200, headers=CORS_HEADERS)
            await response(scope, receive, send)
            return

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in CORS_HEADERS.items():
                    headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


def parse_completion_request(body: bytes) -> ChatCompletionRequest:
    """Parse and validate a raw request body.

    Raises:
        ValidationError: On invalid JSON, a missing or non-array `messages` field,
                         an empty `messages` array, or any field of the wrong type.
    """
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
        raise ValidationError("messages field is required and must be an array")

    try:
        return ChatCompletionRequest.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"{location}: {first['msg']}") from e


# ── Endpoints ────────────────────────────────────────────────────────

async def health(request: Request) -> JSONResponse:
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return JSONResponse({"status": "healthy", "timestamp": timestamp, "server": SERVER_LABEL})


async def list_models(request: Request) -> JSONResponse:
    """List the registry's models in discovery order, in OpenAI model-list format."""
    registry = request.app.state.registry
    try:
        await registry.ensure_initialized()
    except Exception as e:
        logger.error(f"Failed to list models: {e}")
        return error_from_exception(e)

    created = unix_now()
    models = [ModelObject(id=model_id, created=created, owned_by=OWNED_BY)
              for model_id in registry.list_models()]
    return JSONResponse(ModelListResponse(data=models).model_dump())


async def chat_completions(request: Request) -> Response:
    """Handle a chat completion request (OpenAI-compatible).

    Flow:
      1. Read the whole body and validate it (400 on failure).
      2. Resolve a configured model alias, if any.
      3. Make sure the registry has models (500 if none can be found).
      4. Delegate to the streaming or non-streaming handler.

    Returns:
        JSONResponse for buffered completions and errors, or an
        EventSourceResponse for streaming requests.
    """
    state = request.app.state
    try:
        req = parse_completion_request(await request.body())
        model_name = resolve_model(req.model, state.config)
        if model_name != req.model:
            req = req.model_copy(update={"model": model_name})

        await state.registry.ensure_initialized()
        logger.info(f"Processing request: model={req.model}, messages={len(req.messages)}, stream={req.stream}")
        if req.stream:
            return await _handle_streaming(state.translator, req)
        return await _handle_non_streaming(request, state.translator, req)
    except ValidationError as e:
        logger.info(f"Rejected request: {e.message}")
        return error_from_exception(e)
    except Exception as e:
        logger.error(f"Request error: {e}")
        return error_from_exception(e)


async def _wait_for_disconnect(request: Request) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def _handle_non_streaming(request: Request, translator: CompletionTranslator,
                                req: ChatCompletionRequest) -> JSONResponse:
    """Run a buffered completion, cancelling it if the client goes away first."""
    completion = asyncio.create_task(translator.create_completion(req))
    disconnect = asyncio.create_task(_wait_for_disconnect(request))
    try:
        await asyncio.wait({completion, disconnect}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        disconnect.cancel()
        if not completion.done():
            completion.cancel()
        await asyncio.gather(completion, disconnect, return_exceptions=True)

    if completion.cancelled():
        logger.info("Client disconnected, completion cancelled")
        return error_from_exception(InternalError("Client disconnected before the completion finished"))
    return JSONResponse(completion.result().model_dump())


async def _handle_streaming(translator: CompletionTranslator, req: ChatCompletionRequest) -> Response:
    """Stream chunks as Server-Sent Events.

    The first chunk is pulled before the response starts, so a failure before any
    output (e.g., the provider rejecting the request) is still a JSON error.

    SSE event sequence:
      1. Role chunk: delta.role="assistant"
      2. One content chunk per provider fragment
      3. Final chunk: empty delta, finish_reason="stop"
      4. [DONE] sentinel
    """
    stream = translator.create_completion_stream(req)
    try:
        first = await anext(stream)
    except BaseException:
        await stream.aclose()
        raise

    async def event_generator():
        try:
            yield {"data": first.to_json()}
            try:
                async for chunk in stream:
                    yield {"data": chunk.to_json()}
            except Exception as e:
                status_code, message = status_and_message(e)
                logger.error(f"Stream aborted: {message}")
                yield {"data": json.dumps(error_payload(status_code, message))}
                return
            yield {"data": "[DONE]"}
        finally:
            await stream.aclose()

    return EventSourceResponse(
        event_generator(),
        headers=SSE_HEADERS,
        sep="\n",
        background=BackgroundTask(stream.aclose),
    )


async def _http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    # Unknown paths and wrong methods on known paths are both "not found".
    if exc.status_code in (404, 405):
        return error_from_exception(RouteNotFound("The requested endpoint was not found"))
    return error_response(str(exc.detail), exc.status_code)


async def _unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    # Runs outside CORSHeadersMiddleware, so the headers are added here.
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    response = error_from_exception(exc)
    response.headers.update(CORS_HEADERS)
    return response


# ── App ──────────────────────────────────────────────────────────────

def create_app(translator: CompletionTranslator, config: Optional[dict] = None) -> Starlette:
    """Build the gateway application.

    Args:
        translator: The completion translator; its registry is shared with the app.
        config: Loaded configuration (only `aliases` is used here). Defaults to no aliases.

    Returns:
        Starlette: The ASGI application.
    """
    registry = translator.registry

    @asynccontextmanager
    async def lifespan(app):
        try:
            await registry.initialize()
        except Exception as e:
            logger.error(f"Startup discovery failed, will retry on first request: {e}")
        yield

    app = Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/v1/models", list_models, methods=["GET"]),
            Route("/v1/chat/completions", chat_completions, methods=["POST"]),
        ],
        middleware=[Middleware(CORSHeadersMiddleware)],
        exception_handlers={HTTPException: _http_exception, Exception: _unhandled_exception},
        lifespan=lifespan,
    )
    app.state.translator = translator
    app.state.registry = registry
    app.state.config = config if config is not None else {"aliases": {}}
    return app


class GatewayServer:
    """Runs the gateway on a single listening socket via uvicorn.

    One instance serves one port at a time: start() on a running server raises
    ServerAlreadyRunning, and binding a port another listener holds raises OSError.

    Example:
        server = GatewayServer(app, port=3000)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, app, host: str = "127.0.0.1", port: int = 3000, log_level: str = "warning"):
        self.app = app
        self.host = host
        self._requested_port = port
        self.log_level = log_level
        self._server: Optional[uvicorn.Server] = None
        self._socket: Optional[socket.socket] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """The bound port while running (resolves port 0), else the requested one."""
        if self._socket is not None:
            return self._socket.getsockname()[1]
        return self._requested_port

    async def start(self) -> None:
        """Bind the port and start serving. Returns once connections are accepted."""
        if self._server is not None:
            raise ServerAlreadyRunning(f"Gateway server is already running on port {self.port}")

        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self._requested_port))
        except OSError:
            sock.close()
            raise

        config = uvicorn.Config(self.app, host=self.host, port=sock.getsockname()[1],
                                log_level=self.log_level, lifespan="on")
        server = uvicorn.Server(config)
        self._server, self._socket = server, sock
        self._task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if self._task.done():
                task = self._task
                self._reset()
                task.result()
                raise RuntimeError("Gateway server exited during startup")
            await asyncio.sleep(0.05)
        logger.info(f"Gateway server listening on http://{self.host}:{self.port}")

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """Shut down gracefully. Does nothing if the server is not running."""
        if self._server is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._reset()
        logger.info("Gateway server stopped")

    def _reset(self) -> None:
        if self._socket is not None:
            self._socket.close()
        self._server = self._socket = self._task = None

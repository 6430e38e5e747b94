"""
Error taxonomy and the error envelope returned by the gateway.

Every failure that leaves the HTTP surface is shaped as:

    {"error": {"type": "<status phrase, lowercase, underscores>", "message": "..."}}

The translator and registry raise the typed errors below; the gateway maps each
of them to exactly one HTTP status (400, 404 or 500) via `status_code`.
"""

from http import HTTPStatus
from typing import Optional

from starlette.responses import JSONResponse


class LMBridgeError(Exception):
    """Base class for errors that carry their own HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LMBridgeError):
    """Malformed or missing request fields. The caller may fix and resubmit."""

    status_code = 400


class NoModelsAvailable(LMBridgeError):
    """Discovery found no usable model. Fatal for the request, not the process."""


class ProviderError(LMBridgeError):
    """The underlying model call failed or was rejected.

    Attributes:
        code: The provider's own error code, kept for logging and diagnostics.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RouteNotFound(LMBridgeError):
    status_code = 404


class InternalError(LMBridgeError):
    pass


class ServerAlreadyRunning(RuntimeError):
    """Raised when a GatewayServer is started twice without being stopped."""


def error_type(status_code: int) -> str:
    """Derive the envelope type from the HTTP reason phrase (404 -> "not_found")."""
    return HTTPStatus(status_code).phrase.lower().replace(" ", "_")


def error_payload(status_code: int, message: str) -> dict:
    return {"error": {"type": error_type(status_code), "message": message}}


def error_response(message: str, status_code: int = 500) -> JSONResponse:
    """Create an error response in the gateway's envelope format.

    Args:
        message: Human-readable error description.
        status_code: HTTP status code. Defaults to 500.

    Returns:
        JSONResponse: The envelope with the matching status code.
    """
    return JSONResponse(error_payload(status_code, message), status_code=status_code)


def as_bridge_error(exc: BaseException) -> LMBridgeError:
    """Typed errors pass through; anything else becomes an InternalError with the exception text."""
    if isinstance(exc, LMBridgeError):
        return exc
    return InternalError(str(exc) or exc.__class__.__name__)


def status_and_message(exc: BaseException) -> tuple[int, str]:
    error = as_bridge_error(exc)
    return error.status_code, error.message


def error_from_exception(exc: BaseException) -> JSONResponse:
    status_code, message = status_and_message(exc)
    return error_response(message, status_code)

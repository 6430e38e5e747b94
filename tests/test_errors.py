"""Tests for the error envelope and status mapping."""

import json

import pytest

from lmbridge.errors import (
    InternalError,
    NoModelsAvailable,
    ProviderError,
    RouteNotFound,
    ValidationError,
    as_bridge_error,
    error_from_exception,
    error_type,
    status_and_message,
)


@pytest.mark.parametrize("status, expected", [
    (400, "bad_request"),
    (404, "not_found"),
    (500, "internal_server_error"),
])
def test_error_type_from_status_phrase(status, expected):
    assert error_type(status) == expected


@pytest.mark.parametrize("exc, status", [
    (ValidationError("bad"), 400),
    (RouteNotFound("missing"), 404),
    (NoModelsAvailable("none"), 500),
    (ProviderError("quota", code="quota"), 500),
    (InternalError("oops"), 500),
])
def test_typed_errors_keep_their_status(exc, status):
    assert status_and_message(exc) == (status, exc.message)


def test_unexpected_exception_becomes_internal_error():
    error = as_bridge_error(KeyError())
    assert isinstance(error, InternalError)
    assert error.message == "KeyError"


def test_error_from_exception_builds_envelope():
    resp = error_from_exception(RuntimeError("boom"))
    assert resp.status_code == 500
    assert json.loads(resp.body) == {"error": {"type": "internal_server_error", "message": "boom"}}

"""
Tests for failure classification.
"""

import asyncio

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from leadscout.common.errors import (
    FailureKind,
    PermanentError,
    TransientError,
    classify_exception,
    classify_status_code,
    error_from_response,
)


class Strict(BaseModel):
    count: int


class TestClassifyStatusCode:

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_retryable_statuses(self, status):
        assert classify_status_code(status) == FailureKind.TRANSIENT

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_are_permanent(self, status):
        assert classify_status_code(status) == FailureKind.PERMANENT


class TestClassifyException:

    def test_pipeline_errors_keep_their_kind(self):
        assert classify_exception(TransientError("x")) == FailureKind.TRANSIENT
        assert classify_exception(PermanentError("x")) == FailureKind.PERMANENT

    def test_timeouts_are_transient(self):
        assert classify_exception(asyncio.TimeoutError()) == FailureKind.TRANSIENT
        assert classify_exception(httpx.ReadTimeout("slow")) == FailureKind.TRANSIENT
        assert classify_exception(httpx.ConnectError("refused")) == FailureKind.TRANSIENT

    def test_http_status_error_uses_status(self):
        request = httpx.Request("GET", "https://api.apify.com/v2/users/me")
        response = httpx.Response(401, request=request)
        error = httpx.HTTPStatusError("unauthorized", request=request, response=response)

        assert classify_exception(error) == FailureKind.PERMANENT

    def test_validation_error_is_permanent(self):
        with pytest.raises(ValidationError) as excinfo:
            Strict.model_validate({"count": "many"})

        assert classify_exception(excinfo.value) == FailureKind.PERMANENT

    def test_message_patterns(self):
        assert classify_exception(RuntimeError("Rate limit exceeded")) == FailureKind.TRANSIENT
        assert classify_exception(RuntimeError("Permission denied for actor")) == FailureKind.PERMANENT

    def test_unknown_errors_default_to_transient(self):
        assert classify_exception(RuntimeError("something odd")) == FailureKind.TRANSIENT


class TestErrorFromResponse:

    def test_server_error_becomes_transient(self):
        error = error_from_response(httpx.Response(503), "Apify search")

        assert isinstance(error, TransientError)
        assert "HTTP 503" in str(error)

    def test_client_error_becomes_permanent(self):
        assert isinstance(error_from_response(httpx.Response(400), "Apify search"), PermanentError)

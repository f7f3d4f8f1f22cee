"""
Tests for the typed error hierarchy built at the HTTP boundary.
"""

import httpx
import pytest

from shotsmith.errors import (
    ContentPolicyError,
    DownloadError,
    HttpError,
    JobTimeoutError,
    NetworkError,
    ParseError,
    RateLimitError,
    RequestTimeoutError,
    ServerBusyError,
    TaskFailedError,
    error_from_response,
    error_from_transport,
    is_retryable,
)


def _response(status: int, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", "https://api.test/v1"), **kwargs)


class TestErrorFromResponse:
    """Status code mapping."""

    @pytest.mark.parametrize("status,cls", [
        (400, ContentPolicyError),
        (429, RateLimitError),
        (500, ServerBusyError),
        (503, ServerBusyError),
        (404, HttpError),
        (401, HttpError),
    ])
    def test_status_maps_to_class(self, status, cls):
        err = error_from_response(_response(status, text="boom"))
        assert type(err) is cls
        assert err.status_code == status

    def test_extracts_nested_error_message(self):
        err = error_from_response(_response(429, json={"error": {"message": "slow down"}}))
        assert "slow down" in str(err)
        assert str(err).startswith("HTTP 429")

    def test_falls_back_to_raw_text(self):
        err = error_from_response(_response(502, text="<html>bad gateway</html>"))
        assert "bad gateway" in str(err)
        assert err.body == "<html>bad gateway</html>"

    def test_content_policy_message(self):
        err = error_from_response(_response(400, json={"message": "unsafe"}))
        assert "content policy" in str(err)
        assert "unsafe" in str(err)


class TestErrorFromTransport:

    def test_timeout(self):
        exc = httpx.ReadTimeout("read timed out")
        assert isinstance(error_from_transport(exc), RequestTimeoutError)

    def test_connect_error(self):
        exc = httpx.ConnectError("refused")
        assert isinstance(error_from_transport(exc), NetworkError)


class TestIsRetryable:

    @pytest.mark.parametrize("exc", [
        RateLimitError("x", 429),
        ServerBusyError("x", 503),
        RequestTimeoutError("x"),
        NetworkError("x"),
    ])
    def test_transient(self, exc):
        assert is_retryable(exc)

    @pytest.mark.parametrize("exc", [
        ContentPolicyError("x", 400),
        HttpError("x", 404),
        ParseError("x"),
        TaskFailedError("x"),
        JobTimeoutError("x"),
        DownloadError("x"),
        ValueError("x"),
    ])
    def test_permanent(self, exc):
        assert not is_retryable(exc)

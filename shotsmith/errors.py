"""Typed error hierarchy for provider calls.

Errors are built once, at the HTTP boundary, from the response status or
the transport exception. Retry classification is then a plain isinstance
check over the retryable classes rather than message matching.
"""

from __future__ import annotations

import json
from typing import Any

import httpx


class GenerationError(Exception):
    """Base class for every failure raised by the orchestration engine."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ConfigError(GenerationError):
    """Raised when no model of the requested kind is configured."""


class ApiKeyError(GenerationError):
    """Raised when no API key can be found for a request.

    Fatal to the session, not to the single call: the host application
    clears the active key and asks the user to authenticate again.
    """


class HttpError(GenerationError):
    """Raised for a non-2xx provider response."""


class ContentPolicyError(HttpError):
    """HTTP 400. The prompt was rejected and must be edited."""


class RateLimitError(HttpError):
    """HTTP 429."""


class ServerBusyError(HttpError):
    """HTTP 5xx."""


class RequestTimeoutError(GenerationError):
    """A single request was aborted client-side after its timeout."""


class NetworkError(GenerationError):
    """Transport failure (connection refused/reset, broken read)."""


class ParseError(GenerationError):
    """The provider answered, but the body could not be understood."""


class TaskFailedError(GenerationError):
    """An async provider task reached a terminal failure state."""


class JobTimeoutError(GenerationError):
    """The overall deadline of a video protocol passed.

    The remote task may still be running; the client has only stopped
    waiting for it.
    """


class DownloadError(GenerationError):
    """Generation succeeded but its result could not be fetched."""


_RETRYABLE = (RateLimitError, ServerBusyError, RequestTimeoutError, NetworkError)


def is_retryable(exc: BaseException) -> bool:
    """Whether ``exc`` is a transient failure worth another attempt."""
    return isinstance(exc, _RETRYABLE)


def _extract_message(response: httpx.Response) -> str:
    text = response.text
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("message"):
            return str(data["message"])
    return text


def error_from_response(response: httpx.Response) -> HttpError:
    """Build the typed error for a non-2xx response."""
    status = response.status_code
    message = _extract_message(response)
    if status == 400:
        cls: type[HttpError] = ContentPolicyError
        message = f"Prompt rejected by content policy: {message}"
    elif status == 429:
        cls = RateLimitError
    elif status >= 500:
        cls = ServerBusyError
    else:
        cls = HttpError
    return cls(f"HTTP {status}: {message}", status_code=status, body=response.text)


def error_from_transport(exc: httpx.TransportError) -> GenerationError:
    """Build the typed error for an httpx transport exception."""
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(f"Request timeout: {exc}")
    return NetworkError(f"Network error: {exc}")

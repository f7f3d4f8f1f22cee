"""Blocking and streamed completions against chat and image endpoints."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

import httpx

from shotsmith.errors import (
    GenerationError,
    ParseError,
    error_from_response,
    error_from_transport,
)
from shotsmith.imaging import parse_data_url
from shotsmith.models import ResolvedModel
from shotsmith.transport import BaseClient, auth_headers, parse_json, request_timeout, with_deadline

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_VERIFY_PROMPT = "Reply with 1"


def clean_json_string(text: str) -> str:
    """Strip markdown code fences around a JSON answer."""
    return _FENCE_RE.sub("", text.strip()).strip()


def _delta_of(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    delta = (choice.get("delta") or {}).get("content")
    if not delta:
        delta = (choice.get("message") or {}).get("content")
    return delta or ""


class SSEDecoder:
    """Incremental decoder for ``text/event-stream`` completion bodies.

    Chunks may split anywhere. A frame is only processed once its blank-line
    delimiter has arrived; frames whose JSON does not parse are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._parts: list[str] = []
        self.done = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: str) -> list[str]:
        """Add a chunk and return the content deltas it completed."""
        if self.done:
            return []
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        deltas: list[str] = []
        while not self.done:
            boundary = self._buffer.find("\n\n")
            if boundary == -1:
                break
            frame = self._buffer[:boundary].strip()
            self._buffer = self._buffer[boundary + 2:]
            if frame:
                deltas.extend(self._process(frame))
        return deltas

    def _process(self, frame: str) -> list[str]:
        deltas = []
        for line in frame.split("\n"):
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                self.done = True
                break
            try:
                payload = json.loads(data)
            except ValueError:
                logger.debug("Skipping malformed SSE frame: %r", data[:80])
                continue
            delta = _delta_of(payload)
            if delta:
                self._parts.append(delta)
                deltas.append(delta)
        return deltas


class CompletionClient(BaseClient):
    """Async client for chat completions and image generation.

    Usage::

        async with CompletionClient(ModelResolver(config)) as client:
            text = await client.chat("Write a logline")
            image = await client.generate_image("A lighthouse at dusk")
    """

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _chat_body(
        self,
        model: ResolvedModel,
        prompt: str,
        temperature: float | None,
        response_format: str | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model.api_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": model.temperature if temperature is None else temperature,
        }
        if response_format == "json_object":
            body["response_format"] = {"type": "json_object"}
        return body

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(
        self,
        prompt: str,
        model_hint: str | None = None,
        temperature: float | None = None,
        response_format: str | None = None,
        max_wait: float | None = None,
    ) -> str:
        """Run one blocking chat completion.

        Args:
            prompt: User message.
            model_hint: Chat model id; the active chat model when None.
            temperature: Sampling temperature; the model default when None.
            response_format: "json_object" to request a JSON answer.
            max_wait: Per-attempt deadline in seconds (default 600).

        Returns:
            ``choices[0].message.content`` of the response.

        Raises:
            ConfigError, ApiKeyError: If no model or key resolves.
            HttpError: On non-2xx responses (after retries for 429/5xx).
            RequestTimeoutError: If the deadline passes on every attempt.
            ParseError: If the body is not a chat completion.
        """
        model = self.resolver.resolve("chat", model_hint)
        body = self._chat_body(model, prompt, temperature, response_format)
        deadline = self.settings.chat_timeout if max_wait is None else max_wait

        async def attempt() -> dict:
            response = await with_deadline(
                self._request(
                    "POST", model.url, json=body, headers=auth_headers(model.api_key),
                    timeout=request_timeout(deadline),
                ),
                deadline,
                what=f"Chat request to {model.model_id}",
            )
            return parse_json(response)

        data = await self._retry(attempt, label=f"chat[{model.model_id}]")
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ParseError(f"Unexpected chat response: {str(data)[:200]}", body=data) from exc

    async def chat_json(self, prompt: str, model_hint: str | None = None, **kwargs: Any) -> Any:
        """Chat completion in JSON mode, decoded.

        Raises:
            ParseError: If the answer is not valid JSON.
        """
        text = await self.chat(prompt, model_hint, response_format="json_object", **kwargs)
        cleaned = clean_json_string(text)
        try:
            return json.loads(cleaned)
        except ValueError as exc:
            raise ParseError(f"Model returned invalid JSON: {cleaned[:200]}", body=text) from exc

    async def stream_chat(
        self,
        prompt: str,
        on_delta: Callable[[str], None] | None = None,
        model_hint: str | None = None,
        temperature: float | None = None,
        response_format: str | None = None,
        max_wait: float | None = None,
    ) -> str:
        """Run a streamed chat completion and return the accumulated text.

        Opening the stream is retried like any request. Once the body has
        started arriving, a broken stream is not retried.
        """
        model = self.resolver.resolve("chat", model_hint)
        body = self._chat_body(model, prompt, temperature, response_format)
        body["stream"] = True
        deadline = self.settings.chat_timeout if max_wait is None else max_wait

        async def open_stream() -> httpx.Response:
            request = self._http.build_request(
                "POST", model.url, json=body, headers=auth_headers(model.api_key),
                timeout=request_timeout(deadline),
            )
            try:
                response = await self._http.send(request, stream=True)
            except httpx.TransportError as exc:
                raise error_from_transport(exc) from exc
            if response.is_error:
                await response.aread()
                await response.aclose()
                raise error_from_response(response)
            return response

        async def consume() -> str:
            response = await self._retry(open_stream, label=f"stream[{model.model_id}]")
            decoder = SSEDecoder()
            try:
                async for chunk in response.aiter_text():
                    for delta in decoder.feed(chunk):
                        if on_delta is not None:
                            on_delta(delta)
                    if decoder.done:
                        break
            except httpx.TransportError as exc:
                raise error_from_transport(exc) from exc
            finally:
                await response.aclose()
            return decoder.text

        return await with_deadline(consume(), deadline, what=f"Stream from {model.model_id}")

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def generate_image(
        self,
        prompt: str,
        reference_images: tuple[str, ...] | list[str] = (),
        aspect_ratio: str = "16:9",
        model_hint: str | None = None,
    ) -> str:
        """Generate one image.

        Args:
            prompt: Final prompt text, sent as-is.
            reference_images: Data URLs attached as inline image parts.
                Values that are not image data URLs are ignored.
            aspect_ratio: Requested ratio; only non-16:9 values are sent.
            model_hint: Image model id; the active image model when None.

        Returns:
            The image as a ``data:image/png;base64,...`` URL.

        Raises:
            ParseError: If the response carries no inline image.
        """
        model = self.resolver.resolve("image", model_hint)

        parts: list[dict[str, Any]] = [{"text": prompt}]
        for ref in reference_images:
            parsed = parse_data_url(ref)
            if parsed and parsed[0].startswith("image/"):
                parts.append({"inlineData": {"mimeType": parsed[0], "data": parsed[1]}})

        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        if aspect_ratio != "16:9":
            body["generationConfig"]["imageConfig"] = {"aspectRatio": aspect_ratio}

        headers = {**auth_headers(model.api_key), "Accept": "*/*"}
        deadline = self.settings.image_timeout

        async def attempt() -> dict:
            response = await with_deadline(
                self._request("POST", model.url, json=body, headers=headers, timeout=request_timeout(deadline)),
                deadline,
                what=f"Image request to {model.model_id}",
            )
            return parse_json(response)

        logger.info("Generating image with %s (%d reference(s))", model.model_id, len(parts) - 1)
        data = await self._retry(attempt, label=f"image[{model.model_id}]")

        candidates = data.get("candidates") if isinstance(data, dict) else None
        if candidates:
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                inline = part.get("inlineData")
                if inline and inline.get("data"):
                    return f"data:image/png;base64,{inline['data']}"
        raise ParseError("Image response carried no inline image data", body=data)

    # ------------------------------------------------------------------
    # Key check
    # ------------------------------------------------------------------

    async def verify_api_key(self, api_key: str) -> tuple[bool, str]:
        """Check that ``api_key`` is accepted by the active chat provider.

        Returns:
            (ok, message). Failures are reported, not raised.
        """
        config = self.resolver.config
        model_def = config.model(config.active_models.get("chat", "")) or config.models_of("chat")[0]
        provider = config.provider(model_def.provider_id) or config.default_provider()
        url = f"{provider.base_url}/v1/chat/completions"
        body = {
            "model": model_def.api_model or model_def.id,
            "messages": [{"role": "user", "content": _VERIFY_PROMPT}],
            "temperature": 0.1,
            "max_tokens": 5,
        }
        try:
            response = await self._request("POST", url, json=body, headers=auth_headers(api_key))
            data = parse_json(response)
        except GenerationError as exc:
            return False, str(exc)

        choices = data.get("choices") if isinstance(data, dict) else None
        if choices and isinstance(choices[0], dict) and "message" in choices[0]:
            return True, "API key verified"
        return False, "Unexpected response format"

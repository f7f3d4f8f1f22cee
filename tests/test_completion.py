"""
Tests for chat, streamed chat and image completions.
"""

import asyncio
import json

import httpx
import pytest

from conftest import json_response
from shotsmith.completion import CompletionClient, SSEDecoder, clean_json_string
from shotsmith.errors import (
    ApiKeyError,
    ContentPolicyError,
    ParseError,
    RateLimitError,
    RequestTimeoutError,
    ServerBusyError,
)
from shotsmith.resolver import ModelResolver


def _chat_ok(content: str) -> httpx.Response:
    return json_response({"choices": [{"message": {"role": "assistant", "content": content}}]})


class Recorder:
    """MockTransport handler replaying queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class TestChat:
    """Blocking chat completions."""

    @pytest.mark.asyncio
    async def test_request_body_and_result(self, resolver, make_http, clock):
        rec = Recorder(_chat_ok("hello"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)

        assert await client.chat("Say hi", temperature=0.2) == "hello"

        request = rec.requests[0]
        assert str(request.url) == "https://api.antsk.cn/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body["model"] == "gpt-5.1"
        assert body["messages"] == [{"role": "user", "content": "Say hi"}]
        assert body["temperature"] == 0.2
        assert "response_format" not in body

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,cls", [(429, RateLimitError), (500, ServerBusyError), (503, ServerBusyError)])
    async def test_retryable_status_three_attempts(self, resolver, make_http, clock, status, cls):
        rec = Recorder(
            httpx.Response(status, text="first"),
            httpx.Response(status, text="second"),
            httpx.Response(status, text="third"),
            _chat_ok("never reached"),
        )
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)

        with pytest.raises(cls) as info:
            await client.chat("x")
        assert len(rec.requests) == 3
        assert "third" in str(info.value)
        assert clock.sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_timeout_three_attempts(self, resolver, make_http, clock):
        rec = Recorder(httpx.ReadTimeout("timed out"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)

        with pytest.raises(RequestTimeoutError):
            await client.chat("x")
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_recovers_after_rate_limit(self, resolver, make_http, clock):
        rec = Recorder(httpx.Response(429, text="slow"), _chat_ok("done"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        assert await client.chat("x") == "done"
        assert len(rec.requests) == 2

    @pytest.mark.asyncio
    async def test_content_policy_single_attempt(self, resolver, make_http, clock):
        rec = Recorder(httpx.Response(400, json={"error": {"message": "unsafe"}}))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)

        with pytest.raises(ContentPolicyError) as info:
            await client.chat("x")
        assert len(rec.requests) == 1
        assert info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_json_single_attempt(self, resolver, make_http, clock):
        rec = Recorder(httpx.Response(200, text="<html>not json</html>"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)

        with pytest.raises(ParseError):
            await client.chat("x")
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_key_raises_before_request(self, config, make_http, clock):
        rec = Recorder(_chat_ok("x"))
        client = CompletionClient(ModelResolver(config.without_api_keys()), http=make_http(rec), sleep=clock.sleep)
        with pytest.raises(ApiKeyError):
            await client.chat("x")
        assert rec.requests == []

    @pytest.mark.asyncio
    async def test_chat_json_strips_fences(self, resolver, make_http, clock):
        rec = Recorder(_chat_ok('```json\n{"panels": [1, 2]}\n```'))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)

        assert await client.chat_json("x") == {"panels": [1, 2]}
        body = json.loads(rec.requests[0].content)
        assert body["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_chat_json_invalid(self, resolver, make_http, clock):
        rec = Recorder(_chat_ok("not json at all"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        with pytest.raises(ParseError):
            await client.chat_json("x")


class TestDeadlines:
    """Whole-request deadlines, not the connection pool read timeout."""

    @pytest.mark.asyncio
    async def test_chat_reads_may_last_the_full_deadline(self, resolver, make_http, clock):
        rec = Recorder(_chat_ok("ok"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        await client.chat("x")
        assert rec.requests[0].extensions["timeout"]["read"] == 600.0

    @pytest.mark.asyncio
    async def test_image_reads_may_last_the_full_deadline(self, resolver, make_http, clock):
        rec = Recorder(TestGenerateImage._image_ok())
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        await client.generate_image("x")
        assert rec.requests[0].extensions["timeout"]["read"] == 600.0

    @pytest.mark.asyncio
    async def test_slow_chat_aborted_at_max_wait(self, resolver, make_http, clock):
        calls = []

        async def slow(request):
            calls.append(request)
            await asyncio.sleep(5)
            return _chat_ok("too late")

        client = CompletionClient(resolver, http=make_http(slow), sleep=clock.sleep)
        with pytest.raises(RequestTimeoutError):
            await client.chat("x", max_wait=0.05)
        assert len(calls) == 3
        assert clock.sleeps == [2.0, 4.0]


class TestCleanJsonString:

    def test_plain(self):
        assert clean_json_string(' {"a": 1} ') == '{"a": 1}'

    def test_fenced(self):
        assert clean_json_string('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert clean_json_string('```\n[1]\n```') == "[1]"


class TestSSEDecoder:
    """Incremental decoding of streamed completions."""

    @staticmethod
    def _frame(content: str) -> str:
        return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n\n"

    def test_frame_split_across_chunks(self):
        decoder = SSEDecoder()
        frame = self._frame("Hello")
        assert decoder.feed(frame[:10]) == []
        assert decoder.feed(frame[10:-1]) == []
        assert decoder.feed(frame[-1:]) == ["Hello"]
        assert decoder.text == "Hello"

    def test_multiple_frames_in_one_chunk(self):
        decoder = SSEDecoder()
        assert decoder.feed(self._frame("a") + self._frame("b")) == ["a", "b"]

    def test_malformed_frame_skipped(self):
        decoder = SSEDecoder()
        decoder.feed("data: {not json\n\n" + self._frame("ok"))
        assert decoder.text == "ok"

    def test_done_stops_decoding(self):
        decoder = SSEDecoder()
        decoder.feed(self._frame("a") + "data: [DONE]\n\n" + self._frame("late"))
        assert decoder.done
        assert decoder.text == "a"
        assert decoder.feed(self._frame("more")) == []

    def test_crlf_delimiters(self):
        decoder = SSEDecoder()
        decoder.feed(self._frame("x").replace("\n", "\r\n"))
        assert decoder.text == "x"

    def test_comments_and_empty_deltas_ignored(self):
        decoder = SSEDecoder()
        decoder.feed(": keep-alive\n\n" + self._frame("") + self._frame("y"))
        assert decoder.text == "y"


class TestStreamChat:

    @pytest.mark.asyncio
    async def test_accumulates_and_reports_deltas(self, resolver, make_http, clock):
        body = (
            TestSSEDecoder._frame("Once ")
            + TestSSEDecoder._frame("upon")
            + "data: [DONE]\n\n"
        )
        rec = Recorder(httpx.Response(200, text=body, headers={"content-type": "text/event-stream"}))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        seen = []

        text = await client.stream_chat("story", on_delta=seen.append)

        assert text == "Once upon"
        assert seen == ["Once ", "upon"]
        assert json.loads(rec.requests[0].content)["stream"] is True

    @pytest.mark.asyncio
    async def test_open_phase_is_retried(self, resolver, make_http, clock):
        rec = Recorder(
            httpx.Response(503, text="busy"),
            httpx.Response(200, text=TestSSEDecoder._frame("ok") + "data: [DONE]\n\n"),
        )
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        assert await client.stream_chat("x") == "ok"
        assert len(rec.requests) == 2

    @pytest.mark.asyncio
    async def test_error_status_not_retried_when_permanent(self, resolver, make_http, clock):
        rec = Recorder(httpx.Response(400, text="rejected"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        with pytest.raises(ContentPolicyError):
            await client.stream_chat("x")
        assert len(rec.requests) == 1


class TestGenerateImage:
    """Image endpoint payload and result extraction."""

    @staticmethod
    def _image_ok(data: str = "SU1BR0U=") -> httpx.Response:
        return json_response({"candidates": [{"content": {"parts": [
            {"text": "here you go"},
            {"inlineData": {"mimeType": "image/png", "data": data}},
        ]}}]})

    @pytest.mark.asyncio
    async def test_payload_and_result(self, resolver, make_http, clock):
        rec = Recorder(self._image_ok())
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)

        result = await client.generate_image(
            "A lantern", ["data:image/jpeg;base64,QUJD", "https://not-a-data-url"], "9:16",
        )

        assert result == "data:image/png;base64,SU1BR0U="
        request = rec.requests[0]
        assert request.url.path == "/v1beta/models/gemini-3-pro-image-preview:generateContent"
        body = json.loads(request.content)
        parts = body["contents"][0]["parts"]
        assert parts[0] == {"text": "A lantern"}
        assert parts[1] == {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}}
        assert len(parts) == 2
        assert body["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]
        assert body["generationConfig"]["imageConfig"] == {"aspectRatio": "9:16"}

    @pytest.mark.asyncio
    async def test_default_ratio_sends_no_image_config(self, resolver, make_http, clock):
        rec = Recorder(self._image_ok())
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        await client.generate_image("x")
        body = json.loads(rec.requests[0].content)
        assert "imageConfig" not in body["generationConfig"]

    @pytest.mark.asyncio
    async def test_no_image_in_response(self, resolver, make_http, clock):
        rec = Recorder(json_response({"candidates": [{"content": {"parts": [{"text": "sorry"}]}}]}))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        with pytest.raises(ParseError):
            await client.generate_image("x")
        assert len(rec.requests) == 1


class TestVerifyApiKey:

    @pytest.mark.asyncio
    async def test_accepted(self, resolver, make_http, clock):
        rec = Recorder(_chat_ok("1"))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        ok, _ = await client.verify_api_key("sk-new")
        assert ok
        assert rec.requests[0].headers["Authorization"] == "Bearer sk-new"

    @pytest.mark.asyncio
    async def test_rejected(self, resolver, make_http, clock):
        rec = Recorder(httpx.Response(401, json={"error": {"message": "invalid key"}}))
        client = CompletionClient(resolver, http=make_http(rec), sleep=clock.sleep)
        ok, message = await client.verify_api_key("bad")
        assert not ok
        assert "invalid key" in message

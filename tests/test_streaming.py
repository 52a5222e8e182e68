"""Tests for response extraction and stream relaying."""

import asyncio

import pytest

from tokenwatch.errors import ResponseParseError
from tokenwatch.streaming import (
    StreamRelay,
    extract_from_json,
    extract_from_sse,
    inject_usage_option,
)


SSE_BODY = (
    'data: {"choices":[{"delta":{"content":"ab"}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"cd"}}]}\n\n'
    'data: {"usage":{"prompt_tokens":10,"completion_tokens":2,"total_tokens":12}}\n\n'
    "data: [DONE]\n\n"
)


async def chunked(data: bytes, size: int):
    for i in range(0, len(data), size):
        yield data[i:i + size]


class TestExtractFromSSE:
    """Tests for event-stream extraction."""

    def test_content_and_usage(self):
        extraction = extract_from_sse(SSE_BODY)

        assert extraction.content == "abcd"
        assert extraction.reasoning == ""
        assert extraction.usage == {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}
        assert extraction.skipped_frames == 0

    def test_malformed_frames_are_skipped(self):
        body = (
            'data: {"choices":[{"delta":{"content":"ab"}}]}\n'
            "data: {not json\n"
            'data: "a string"\n'
            'data: {"choices":[{"delta":{"content":"cd"}}]}\n'
        )
        extraction = extract_from_sse(body)

        assert extraction.content == "abcd"
        assert extraction.skipped_frames == 2

    def test_reasoning(self):
        body = (
            'data: {"choices":[{"delta":{"reasoning_content":"think"}}]}\n'
            'data: {"choices":[{"delta":{"content":"answer"}}]}\n'
        )
        extraction = extract_from_sse(body)

        assert extraction.reasoning == "think"
        assert extraction.content == "answer"

    def test_last_usage_wins(self):
        body = (
            'data: {"usage":{"total_tokens":1}}\n'
            'data: {"usage":{"total_tokens":2}}\n'
        )
        assert extract_from_sse(body).usage == {"total_tokens": 2}

    def test_no_usage(self):
        extraction = extract_from_sse('data: {"choices":[]}\n')

        assert extraction.usage is None
        assert extraction.has_text is False

    def test_line_separators_inside_json(self):
        body = (
            'data: {"choices":[{"delta":{"content":"a\u2028b\u2029c\x85d"}}]}\n\n'
            'data: {"usage":{"total_tokens":3,"note":"x\u2028y"}}\n\n'
            "data: [DONE]\n\n"
        )
        extraction = extract_from_sse(body)

        assert extraction.content == "a\u2028b\u2029c\x85d"
        assert extraction.usage["total_tokens"] == 3
        assert extraction.skipped_frames == 0

    def test_crlf_line_endings(self):
        extraction = extract_from_sse(SSE_BODY.replace("\n", "\r\n"))

        assert extraction.content == "abcd"
        assert extraction.usage["total_tokens"] == 12

    def test_ignores_non_data_lines(self):
        body = ": keep-alive\nevent: message\n" + SSE_BODY
        assert extract_from_sse(body).content == "abcd"


class TestExtractFromJSON:
    """Tests for buffered response extraction."""

    def test_message_and_usage(self):
        body = (
            b'{"choices":[{"message":{"role":"assistant","content":"hi","reasoning_content":"hmm"}}],'
            b'"usage":{"prompt_tokens":5,"completion_tokens":1,"total_tokens":6}}'
        )
        extraction = extract_from_json(body)

        assert extraction.content == "hi"
        assert extraction.reasoning == "hmm"
        assert extraction.usage["total_tokens"] == 6

    def test_invalid_json(self):
        with pytest.raises(ResponseParseError):
            extract_from_json(b"<html>oops</html>")

    def test_not_an_object(self):
        with pytest.raises(ResponseParseError):
            extract_from_json(b"[1, 2]")


class TestInjectUsageOption:
    """Tests for stream_options injection."""

    def test_streaming_body(self):
        body = {"model": "m", "stream": True, "messages": []}
        result = inject_usage_option(body)

        assert result["stream_options"] == {"include_usage": True}
        assert "stream_options" not in body

    def test_keeps_other_stream_options(self):
        body = {"stream": True, "stream_options": {"continuous_usage_stats": True}}
        result = inject_usage_option(body)

        assert result["stream_options"] == {"continuous_usage_stats": True, "include_usage": True}
        assert body["stream_options"] == {"continuous_usage_stats": True}

    def test_non_streaming_body(self):
        body = {"stream": False, "messages": []}
        assert inject_usage_option(body) == body


class TestStreamRelay:
    """Tests for the relay between upstream and client."""

    @pytest.mark.asyncio
    async def test_forward_and_extract(self):
        relay = StreamRelay(chunked(SSE_BODY.encode(), 7))
        task = asyncio.create_task(relay.pump())

        forwarded = [chunk async for chunk in relay.forward()]
        await task

        assert b"".join(forwarded) == SSE_BODY.encode()
        assert relay.completed is True
        assert relay.size == len(SSE_BODY.encode())
        assert relay.extract().content == "abcd"

    @pytest.mark.asyncio
    async def test_multibyte_split_across_chunks(self):
        body = 'data: {"choices":[{"delta":{"content":"你好"}}]}\n'.encode()
        relay = StreamRelay(chunked(body, 1))

        await relay.pump()

        assert relay.extract().content == "你好"

    @pytest.mark.asyncio
    async def test_pump_finishes_without_consumer(self):
        relay = StreamRelay(chunked(SSE_BODY.encode(), 5))

        await relay.pump()

        assert relay.completed is True
        assert relay.extract().usage["total_tokens"] == 12

    @pytest.mark.asyncio
    async def test_forward_ends_when_upstream_fails(self):
        async def failing():
            yield b"data: partial\n"
            raise ConnectionError("reset")

        relay = StreamRelay(failing())
        task = asyncio.create_task(relay.pump())

        forwarded = [chunk async for chunk in relay.forward()]

        with pytest.raises(ConnectionError):
            await task
        assert forwarded == [b"data: partial\n"]
        assert relay.completed is False

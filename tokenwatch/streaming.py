"""Usage and content extraction from upstream responses.

Streamed responses are relayed to the client chunk by chunk while the same
chunks are accumulated; parsing only happens once the stream is complete,
so analysis never delays the forward path.

Streamed bodies are event streams of ``data: <json>`` lines ending with
``data: [DONE]``:

    data: {"choices":[{"delta":{"content":"ab"}}]}
    data: {"choices":[{"delta":{"content":"cd"}}]}
    data: {"usage":{"prompt_tokens":10,"completion_tokens":2,"total_tokens":12}}
    data: [DONE]
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

from tokenwatch.errors import ResponseParseError


logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass
class Extraction:
    """What a response yielded for analysis.

    Attributes:
        content: Concatenated assistant content.
        reasoning: Concatenated reasoning content.
        usage: The usage object, if any (the last one seen in a stream).
        skipped_frames: Stream frames that could not be decoded.
    """
    content: str = ""
    reasoning: str = ""
    usage: dict[str, Any] | None = None
    skipped_frames: int = 0

    @property
    def has_text(self) -> bool:
        return bool(self.content or self.reasoning)


def _first_choice(data: Mapping[str, Any]) -> Mapping[str, Any]:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        return choices[0]
    return {}


def _text(part: Mapping[str, Any], key: str) -> str:
    value = part.get(key)
    return value if isinstance(value, str) else ""


def extract_from_sse(buffer: str) -> Extraction:
    """Extract content, reasoning and usage from an event-stream body.

    Frames are decoded independently; malformed frames are counted and
    skipped. Content fragments are concatenated in frame order and the
    last frame carrying a usage object wins.

    Args:
        buffer: The complete event-stream text.

    Returns:
        The extraction.
    """
    extraction = Extraction()
    content: list[str] = []
    reasoning: list[str] = []

    # Only \n ends a line; U+2028 and friends may appear raw inside JSON strings
    for line in buffer.split("\n"):
        line = line.removesuffix("\r")
        if not line.startswith(DATA_PREFIX):
            continue
        payload = line[len(DATA_PREFIX):].strip()
        if not payload or payload == DONE_SENTINEL:
            continue

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            extraction.skipped_frames += 1
            continue
        if not isinstance(data, Mapping):
            extraction.skipped_frames += 1
            continue

        delta = _first_choice(data).get("delta")
        if isinstance(delta, Mapping):
            content.append(_text(delta, "content"))
            reasoning.append(_text(delta, "reasoning_content"))

        usage = data.get("usage")
        if isinstance(usage, Mapping):
            extraction.usage = dict(usage)

    extraction.content = "".join(content)
    extraction.reasoning = "".join(reasoning)
    return extraction


def extract_from_json(body: str | bytes) -> Extraction:
    """Extract content, reasoning and usage from a single JSON response.

    Raises:
        ResponseParseError: If the body is not a JSON object.
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ResponseParseError(f"invalid JSON response: {e}") from e
    if not isinstance(data, Mapping):
        raise ResponseParseError("response is not a JSON object")

    extraction = Extraction()
    message = _first_choice(data).get("message")
    if isinstance(message, Mapping):
        extraction.content = _text(message, "content")
        extraction.reasoning = _text(message, "reasoning_content")

    usage = data.get("usage")
    if isinstance(usage, Mapping):
        extraction.usage = dict(usage)
    return extraction


def inject_usage_option(body: Mapping[str, Any]) -> dict[str, Any]:
    """Ask for usage accounting in the final frame of a streamed completion.

    Upstream APIs omit usage from streamed completions unless
    ``stream_options.include_usage`` is set. Non-streaming bodies are
    returned unchanged (as a copy).
    """
    result = dict(body)
    if result.get("stream") is True:
        options = result.get("stream_options")
        options = dict(options) if isinstance(options, Mapping) else {}
        options["include_usage"] = True
        result["stream_options"] = options
    return result


class StreamRelay:
    """Relays an upstream byte stream while accumulating it.

    ``pump()`` reads upstream, hands every chunk to the forward queue and
    keeps a copy; ``forward()`` yields queued chunks to the client. The two
    sides are decoupled, so a slow or vanished client never stops the
    upstream read, and parsing waits until ``pump()`` has finished.

    Example:
        >>> relay = StreamRelay(response.aiter_bytes())
        >>> task = asyncio.create_task(relay.pump())
        >>> async for chunk in relay.forward():
        ...     await send(chunk)
        >>> await task
        >>> relay.extract().usage
    """

    def __init__(self, source: AsyncIterator[bytes]) -> None:
        self._source = source
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.chunks: list[bytes] = []
        self.completed = False

    async def pump(self) -> None:
        """Read the upstream stream to the end."""
        try:
            async for chunk in self._source:
                self._queue.put_nowait(chunk)
                self.chunks.append(chunk)
            self.completed = True
        finally:
            self._queue.put_nowait(None)

    async def forward(self) -> AsyncIterator[bytes]:
        """Yield chunks as soon as they arrive, until upstream ends."""
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    @property
    def size(self) -> int:
        return sum(len(c) for c in self.chunks)

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")

    def extract(self) -> Extraction:
        extraction = extract_from_sse(self.text())
        if extraction.skipped_frames:
            logger.warning(
                "Skipped malformed stream frames",
                extra={"data": {"frames": extraction.skipped_frames}},
            )
        return extraction

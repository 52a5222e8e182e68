"""Message types and the summarization model protocol."""

from typing import Any, Mapping, Protocol, TypedDict, runtime_checkable


class Message(TypedDict):
    """A single message in a conversation."""
    role: str
    content: Any


class SummaryMessage(Message, total=False):
    """Synthetic system message produced by compaction.

    ``compaction`` holds ``{"original_count", "timestamp"}``.
    """
    compaction: dict[str, Any]


@runtime_checkable
class SummaryModel(Protocol):
    """Protocol for the model that writes compaction summaries.

    The engine only needs a single call: turn a prompt conversation into
    a summary of at most ``max_tokens`` tokens. Implementations may return
    the text directly or a mapping carrying ``content`` or ``text``.
    """

    async def generate(
        self,
        messages: list[Message],
        max_tokens: int,
    ) -> "str | Mapping[str, Any]":
        """Generate a summary.

        Args:
            messages: Prompt conversation (a single user message).
            max_tokens: Upper bound for the summary length.

        Returns:
            Summary text, or a mapping with ``content`` or ``text``.
        """
        ...

"""Summarization helpers for compaction.

The summary itself is written by an external model (see
``tokenwatch.backends``). This module renders the prompt for it, normalizes
its reply, and provides the deterministic fallback used when it fails.
"""

import asyncio
from typing import Any, Mapping

from tokenwatch.backends.base import Message, SummaryModel
from tokenwatch.errors import SummarizationError
from tokenwatch.token_counter import message_text


SUMMARY_PROMPT = """Summarize the following conversation, preserving key decisions, code changes, and action items:

{conversation}

Summary (be concise but comprehensive):"""

FALLBACK_PREFIX = "Previous conversation covered: "


def build_summary_prompt(messages: list[Message], excerpt_chars: int = 200) -> str:
    """Build the summarization prompt.

    Each message is rendered as a numbered ``[i] role: excerpt`` line.

    Args:
        messages: Messages to summarize.
        excerpt_chars: Characters of each message's content to include.

    Returns:
        The complete summarization prompt.
    """
    lines = []
    for i, msg in enumerate(messages, start=1):
        role = msg.get("role") or "unknown"
        excerpt = message_text(msg)[:excerpt_chars]
        lines.append(f"[{i}] {role}: {excerpt}")

    return SUMMARY_PROMPT.format(conversation="\n".join(lines))


def fallback_summary(
    messages: list[Message],
    max_messages: int = 5,
    max_chars: int = 100,
) -> str:
    """Summarize locally without a model.

    Takes the last ``max_messages`` non-empty contents, truncates each to
    ``max_chars`` characters and joins them.
    """
    contents = [message_text(m) for m in messages]
    key_points = [c[:max_chars] for c in contents if c][-max_messages:]
    return FALLBACK_PREFIX + "; ".join(key_points)


def _reply_text(reply: Any) -> str:
    if isinstance(reply, str):
        return reply
    if isinstance(reply, Mapping):
        text = reply.get("content") or reply.get("text")
        return text if isinstance(text, str) else ""
    return ""


async def generate_summary(
    model: SummaryModel,
    messages: list[Message],
    max_tokens: int,
    timeout: float | None = None,
    excerpt_chars: int = 200,
) -> str:
    """Ask the summarization model for a summary.

    Args:
        model: The summarization collaborator.
        messages: Messages to summarize.
        max_tokens: Length bound passed to the model.
        timeout: Seconds to wait for the model (None waits forever).
        excerpt_chars: Characters of each message shown in the prompt.

    Returns:
        The summary text.

    Raises:
        SummarizationError: If the model fails, times out, or returns nothing.
    """
    prompt = build_summary_prompt(messages, excerpt_chars)
    request: list[Message] = [{"role": "user", "content": prompt}]

    try:
        reply = await asyncio.wait_for(
            model.generate(messages=request, max_tokens=max_tokens),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise SummarizationError(f"summary timed out after {timeout}s") from e
    except Exception as e:
        raise SummarizationError(str(e) or type(e).__name__) from e

    summary = _reply_text(reply).strip()
    if not summary:
        raise SummarizationError("summary model returned no content")
    return summary

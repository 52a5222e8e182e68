"""Sink protocols for the usage bridge and the response log.

Both artifacts are consumed by external tools (dashboards, analytics):

- The usage bridge holds a single snapshot, overwritten after every
  request that reported usage.
- The response log is append-only, one entry per completed request.
"""

from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, runtime_checkable

from tokenwatch.usage import usage_count


@runtime_checkable
class UsageSink(Protocol):
    """Receives the latest usage snapshot."""

    def write(self, snapshot: dict[str, Any]) -> None:
        """Replace the stored snapshot.

        Args:
            snapshot: Snapshot built by ``usage_snapshot``.
        """
        ...


@runtime_checkable
class ResponseLog(Protocol):
    """Receives one entry per completed request."""

    def append(self, entry: dict[str, Any]) -> None:
        """Append an entry.

        Args:
            entry: Entry built by ``response_entry``.
        """
        ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def usage_snapshot(
    usage: Mapping[str, Any],
    context_limit: int,
    request_count: int,
) -> dict[str, Any]:
    """Build the usage bridge snapshot for a usage object."""
    prompt_tokens = usage_count(usage, "prompt_tokens")
    return {
        "timestamp": _now(),
        "prompt_tokens": prompt_tokens,
        "completion_tokens": usage_count(usage, "completion_tokens"),
        "total_tokens": usage_count(usage, "total_tokens"),
        "context_limit": context_limit,
        "usage_percentage": prompt_tokens / context_limit,
        "request_count": request_count,
    }


def response_entry(
    content: str,
    reasoning: str,
    usage: Mapping[str, Any] | None,
    request_num: int,
) -> dict[str, Any]:
    """Build a response log entry. Empty content or reasoning is omitted."""
    entry: dict[str, Any] = {"timestamp": _now()}
    if reasoning:
        entry["reasoning"] = reasoning
    if content:
        entry["content"] = content
    entry["tokens"] = (
        {"prompt": usage.get("prompt_tokens"), "completion": usage.get("completion_tokens")}
        if usage
        else None
    )
    entry["request_num"] = request_num
    return entry

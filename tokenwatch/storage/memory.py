"""In-memory sinks.

Default sinks when no log directory is configured. No persistence; data
is lost when the process ends.
"""

from typing import Any


class MemoryUsageSink:
    """Keeps the latest usage snapshot in memory.

    Example:
        >>> sink = MemoryUsageSink()
        >>> sink.write({"prompt_tokens": 10})
        >>> sink.snapshot
        {"prompt_tokens": 10}
    """

    def __init__(self) -> None:
        self._snapshot: dict[str, Any] | None = None

    @property
    def snapshot(self) -> dict[str, Any] | None:
        """The latest snapshot, or None if nothing was written yet."""
        return dict(self._snapshot) if self._snapshot is not None else None

    def write(self, snapshot: dict[str, Any]) -> None:
        self._snapshot = dict(snapshot)


class MemoryResponseLog:
    """Keeps response log entries in memory, optionally bounded.

    Args:
        max_entries: Oldest entries are dropped past this many (None = unbounded).
    """

    def __init__(self, max_entries: int | None = 1000) -> None:
        self._entries: list[dict[str, Any]] = []
        self._max_entries = max_entries

    @property
    def entries(self) -> list[dict[str, Any]]:
        return self._entries.copy()

    def append(self, entry: dict[str, Any]) -> None:
        self._entries.append(entry)
        if self._max_entries is not None and len(self._entries) > self._max_entries:
            del self._entries[: len(self._entries) - self._max_entries]

    def clear(self) -> None:
        self._entries = []

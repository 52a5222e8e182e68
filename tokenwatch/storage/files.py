"""File-backed sinks.

- UsageFile: JSON snapshot, rewritten after every request with usage.
- ResponseLogFile: JSON Lines, one entry appended per completed request.

Write failures are logged and never raised; the proxy keeps serving.
"""

import json
import logging
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

USAGE_FILE = "usage.json"
RESPONSE_LOG = "responses.jsonl"


class UsageFile:
    """Usage bridge snapshot stored as a JSON file."""

    def __init__(self, path: str | Path) -> None:
        """Initialize the sink.

        Args:
            path: Snapshot file path. Parent directories are created.
        """
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def write(self, snapshot: dict[str, Any]) -> None:
        try:
            with open(self._path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(
                "Failed to write usage file",
                extra={"data": {"path": str(self._path), "error": str(e)}},
            )
            return
        logger.info(
            "Usage file written",
            extra={"data": {"path": str(self._path), "prompt_tokens": snapshot.get("prompt_tokens")}},
        )

    def read(self) -> dict[str, Any] | None:
        """Load the current snapshot, or None if there is none."""
        if not self._path.exists():
            return None
        with open(self._path, encoding="utf-8") as f:
            return json.load(f)


class ResponseLogFile:
    """Append-only response log stored as JSON Lines."""

    def __init__(self, path: str | Path) -> None:
        """Initialize the sink.

        Args:
            path: Log file path. Parent directories are created.
        """
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: dict[str, Any]) -> None:
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error(
                "Failed to write response log",
                extra={"data": {"path": str(self._path), "error": str(e)}},
            )

    def read(self) -> list[dict[str, Any]]:
        """Load all entries."""
        if not self._path.exists():
            return []
        with open(self._path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


def file_sinks(log_dir: str | Path) -> tuple[UsageFile, ResponseLogFile]:
    """Create both file sinks under a directory."""
    log_dir = Path(log_dir)
    return UsageFile(log_dir / USAGE_FILE), ResponseLogFile(log_dir / RESPONSE_LOG)

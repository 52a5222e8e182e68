"""Structured, leveled logging.

Log records carry an optional ``data`` payload passed through ``extra``:

    >>> logger.info("Token usage tracked", extra={"data": {"session": "a"}})

and are rendered as ``[timestamp] [LEVEL] message {"session": "a"}``.
An extra ALERT level sits between ERROR and CRITICAL for context threshold
alerts.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path


ALERT = 45
logging.addLevelName(ALERT, "ALERT")

# Display names for the structured stream
_LEVEL_NAMES = {"WARNING": "WARN"}


class StructuredFormatter(logging.Formatter):
    """Render records as ``[timestamp] [LEVEL] message {data}``."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        level = _LEVEL_NAMES.get(record.levelname, record.levelname)
        line = f"[{timestamp}] [{level}] {record.getMessage()}"

        data = getattr(record, "data", None)
        if data:
            line += " " + json.dumps(data, ensure_ascii=False, default=str)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: int = logging.INFO, log_file: str | Path | None = None) -> None:
    """Attach structured handlers to the ``tokenwatch`` logger.

    The console only shows WARN and above; the optional file receives
    everything at ``level`` and up.

    Args:
        level: Minimum level written to the log file.
        log_file: Optional path of the log file. Parent directories are created.
    """
    root = logging.getLogger("tokenwatch")
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = StructuredFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(max(level, logging.WARNING))
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.propagate = False

"""Per-session usage tracking and context threshold alerts."""

import logging
import math
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Mapping

from tokenwatch.logs import ALERT


logger = logging.getLogger(__name__)

# WARN fires at this fraction of the alert threshold
WARN_RATIO = 0.9


class UsageAlert(str, Enum):
    NONE = "none"
    WARN = "warn"
    ALERT = "alert"


@dataclass
class SessionUsageRecord:
    """Most recent usage observed for a session.

    ``usage_percentage`` is ``prompt_tokens / context_limit`` and may exceed
    1.0 when the model overruns its window.
    """
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    usage_percentage: float
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def usage_count(usage: Mapping[str, Any], key: str) -> int:
    """Read a token count from a usage object; non-numeric values count as 0."""
    value = usage.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return 0


def _reached(percentage: float, level: float) -> bool:
    # Fractions like 0.8 * 0.9 are not exact in binary floating point
    return percentage >= level or math.isclose(percentage, level)


class SessionUsageTracker:
    """Tracks the latest usage per session and raises threshold alerts.

    Alerts are log records (ALERT or WARNING level on the
    ``tokenwatch.usage`` logger); they never trigger compaction themselves.

    Example:
        >>> tracker = SessionUsageTracker(context_limit=1000, threshold=0.8)
        >>> tracker.track("default", {"prompt_tokens": 800})
        <UsageAlert.ALERT: 'alert'>
    """

    def __init__(self, context_limit: int, threshold: float = 0.8) -> None:
        """Initialize the tracker.

        Args:
            context_limit: Context window of the model, in tokens.
            threshold: Fraction of the window at which an ALERT is raised.
        """
        if context_limit <= 0:
            raise ValueError("context_limit must be positive")
        self._context_limit = context_limit
        self._threshold = threshold
        self._sessions: dict[str, SessionUsageRecord] = {}

    @property
    def context_limit(self) -> int:
        return self._context_limit

    @property
    def threshold(self) -> float:
        return self._threshold

    def get(self, session_id: str) -> SessionUsageRecord | None:
        return self._sessions.get(session_id)

    def sessions(self) -> dict[str, SessionUsageRecord]:
        """Copy of the session mapping."""
        return dict(self._sessions)

    def track(self, session_id: str, usage: Any) -> UsageAlert:
        """Record usage for a session and evaluate the alert thresholds.

        Args:
            session_id: Session the usage belongs to.
            usage: Usage object with ``prompt_tokens``, ``completion_tokens``
                   and ``total_tokens``. Non-mapping values are ignored.

        Returns:
            The alert level raised by this usage.
        """
        if not isinstance(usage, Mapping):
            return UsageAlert.NONE

        prompt_tokens = usage_count(usage, "prompt_tokens")
        percentage = prompt_tokens / self._context_limit

        self._sessions[session_id] = SessionUsageRecord(
            prompt_tokens=prompt_tokens,
            completion_tokens=usage_count(usage, "completion_tokens"),
            total_tokens=usage_count(usage, "total_tokens"),
            usage_percentage=percentage,
            timestamp=time.time(),
        )

        data = {
            "session_id": session_id,
            "prompt_tokens": prompt_tokens,
            "percentage": f"{percentage * 100:.1f}%",
        }
        logger.info(
            "Token usage tracked",
            extra={"data": {**data, "threshold": f"{self._threshold * 100:.0f}%"}},
        )

        if _reached(percentage, self._threshold):
            logger.log(ALERT, "THRESHOLD REACHED! Compaction recommended!", extra={"data": data})
            return UsageAlert.ALERT
        if _reached(percentage, self._threshold * WARN_RATIO):
            logger.warning("Approaching threshold (90%)", extra={"data": data})
            return UsageAlert.WARN
        return UsageAlert.NONE

"""Tests for session usage tracking and alerts."""

import logging

import pytest

from tokenwatch.logs import ALERT
from tokenwatch.usage import SessionUsageTracker, UsageAlert


class TestAlertLevels:
    """Alert boundaries with a 1000 token window and a 0.8 threshold."""

    @pytest.mark.parametrize(
        "prompt_tokens, expected",
        [
            (1200, UsageAlert.ALERT),
            (800, UsageAlert.ALERT),
            (799, UsageAlert.WARN),
            (750, UsageAlert.WARN),
            (720, UsageAlert.WARN),
            (719, UsageAlert.NONE),
            (0, UsageAlert.NONE),
        ],
    )
    def test_boundaries(self, prompt_tokens, expected):
        tracker = SessionUsageTracker(context_limit=1000, threshold=0.8)
        assert tracker.track("s", {"prompt_tokens": prompt_tokens}) == expected

    @pytest.mark.parametrize(
        "context_limit, threshold, prompt_tokens, expected",
        [
            (10000, 0.28, 2800, UsageAlert.ALERT),
            (10000, 0.28, 2799, UsageAlert.WARN),
            (10000, 0.28, 2520, UsageAlert.WARN),
            (10000, 0.28, 2519, UsageAlert.NONE),
            (100, 0.07, 7, UsageAlert.ALERT),
            (100, 0.14, 14, UsageAlert.ALERT),
        ],
    )
    def test_boundaries_with_inexact_fractions(self, context_limit, threshold, prompt_tokens, expected):
        """Usage exactly at a level reaches it even when the fraction is not exact in binary."""
        tracker = SessionUsageTracker(context_limit=context_limit, threshold=threshold)
        assert tracker.track("s", {"prompt_tokens": prompt_tokens}) == expected

    def test_non_numeric_counts(self):
        tracker = SessionUsageTracker(context_limit=1000)

        assert tracker.track("s", {"prompt_tokens": "900", "total_tokens": None}) == UsageAlert.NONE
        assert tracker.get("s").prompt_tokens == 0

    def test_alert_is_logged_at_alert_level(self, caplog):
        tracker = SessionUsageTracker(context_limit=1000, threshold=0.8)

        with caplog.at_level(logging.INFO, logger="tokenwatch.usage"):
            tracker.track("s", {"prompt_tokens": 900})

        alerts = [r for r in caplog.records if r.levelno == ALERT]
        assert len(alerts) == 1
        assert "THRESHOLD REACHED" in alerts[0].getMessage()
        assert alerts[0].data["session_id"] == "s"
        assert alerts[0].data["percentage"] == "90.0%"

    def test_warn_is_logged(self, caplog):
        tracker = SessionUsageTracker(context_limit=1000, threshold=0.8)

        with caplog.at_level(logging.INFO, logger="tokenwatch.usage"):
            tracker.track("s", {"prompt_tokens": 750})

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "Approaching threshold" in warnings[0].getMessage()


class TestSessionRecords:
    """Tests for per-session records."""

    def test_record_contents(self):
        tracker = SessionUsageTracker(context_limit=1000)
        tracker.track("a", {"prompt_tokens": 250, "completion_tokens": 10, "total_tokens": 260})
        record = tracker.get("a")

        assert record.prompt_tokens == 250
        assert record.completion_tokens == 10
        assert record.total_tokens == 260
        assert record.usage_percentage == pytest.approx(0.25)
        assert record.timestamp > 0

    def test_last_write_wins(self):
        tracker = SessionUsageTracker(context_limit=1000)
        tracker.track("a", {"prompt_tokens": 500})
        tracker.track("a", {"prompt_tokens": 100})

        assert tracker.get("a").prompt_tokens == 100

    def test_sessions_are_independent(self):
        tracker = SessionUsageTracker(context_limit=1000)
        tracker.track("a", {"prompt_tokens": 1})
        tracker.track("b", {"prompt_tokens": 2})

        assert set(tracker.sessions()) == {"a", "b"}
        assert tracker.get("missing") is None

    def test_percentage_may_exceed_one(self):
        tracker = SessionUsageTracker(context_limit=1000)
        tracker.track("a", {"prompt_tokens": 1500})
        assert tracker.get("a").usage_percentage == pytest.approx(1.5)

    def test_missing_counts_default_to_zero(self):
        tracker = SessionUsageTracker(context_limit=1000)
        tracker.track("a", {"completion_tokens": 5})
        record = tracker.get("a")

        assert record.prompt_tokens == 0
        assert record.total_tokens == 0

    def test_non_mapping_usage_ignored(self):
        tracker = SessionUsageTracker(context_limit=1000)

        assert tracker.track("a", None) == UsageAlert.NONE
        assert tracker.track("a", [1, 2]) == UsageAlert.NONE
        assert tracker.get("a") is None

    def test_context_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            SessionUsageTracker(context_limit=0)

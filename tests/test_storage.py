"""Tests for usage and response log sinks."""

import pytest

from tokenwatch.storage import (
    MemoryResponseLog,
    MemoryUsageSink,
    ResponseLog,
    UsageSink,
    file_sinks,
    response_entry,
    usage_snapshot,
)


USAGE = {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120}


class TestEntries:
    """Tests for snapshot and entry builders."""

    def test_usage_snapshot(self):
        snapshot = usage_snapshot(USAGE, context_limit=1000, request_count=3)

        assert snapshot["prompt_tokens"] == 100
        assert snapshot["completion_tokens"] == 20
        assert snapshot["total_tokens"] == 120
        assert snapshot["context_limit"] == 1000
        assert snapshot["usage_percentage"] == pytest.approx(0.1)
        assert snapshot["request_count"] == 3
        assert "timestamp" in snapshot

    def test_usage_snapshot_non_numeric_counts(self):
        snapshot = usage_snapshot({"prompt_tokens": "12", "completion_tokens": None}, 1000, 1)

        assert snapshot["prompt_tokens"] == 0
        assert snapshot["completion_tokens"] == 0
        assert snapshot["usage_percentage"] == 0.0

    def test_response_entry(self):
        entry = response_entry("answer", "thinking", USAGE, request_num=2)

        assert entry["content"] == "answer"
        assert entry["reasoning"] == "thinking"
        assert entry["tokens"] == {"prompt": 100, "completion": 20}
        assert entry["request_num"] == 2

    def test_response_entry_omits_empty_fields(self):
        entry = response_entry("answer", "", None, request_num=1)

        assert "reasoning" not in entry
        assert entry["tokens"] is None


class TestMemorySinks:
    """Tests for in-memory sinks."""

    def test_usage_sink_overwrites(self):
        sink = MemoryUsageSink()
        assert sink.snapshot is None

        sink.write({"prompt_tokens": 1})
        sink.write({"prompt_tokens": 2})

        assert sink.snapshot == {"prompt_tokens": 2}
        assert isinstance(sink, UsageSink)

    def test_response_log_bounded(self):
        log = MemoryResponseLog(max_entries=2)
        for i in range(3):
            log.append({"request_num": i})

        assert [e["request_num"] for e in log.entries] == [1, 2]
        assert isinstance(log, ResponseLog)

    def test_response_log_clear(self):
        log = MemoryResponseLog()
        log.append({"request_num": 1})
        log.clear()
        assert log.entries == []


class TestFileSinks:
    """Tests for file-backed sinks."""

    def test_paths(self, tmp_path):
        usage_file, response_log = file_sinks(tmp_path / "logs")

        assert usage_file.path == tmp_path / "logs" / "usage.json"
        assert response_log.path == tmp_path / "logs" / "responses.jsonl"
        assert (tmp_path / "logs").is_dir()

    def test_usage_file_is_rewritten(self, tmp_path):
        usage_file, _ = file_sinks(tmp_path)
        assert usage_file.read() is None

        usage_file.write(usage_snapshot(USAGE, 1000, 1))
        usage_file.write(usage_snapshot({"prompt_tokens": 7}, 1000, 2))

        snapshot = usage_file.read()
        assert snapshot["prompt_tokens"] == 7
        assert snapshot["request_count"] == 2

    def test_response_log_appends(self, tmp_path):
        _, response_log = file_sinks(tmp_path)
        assert response_log.read() == []

        response_log.append(response_entry("one", "", USAGE, 1))
        response_log.append(response_entry("二", "", None, 2))

        entries = response_log.read()
        assert [e["content"] for e in entries] == ["one", "二"]
        assert "二" in response_log.path.read_text(encoding="utf-8")

    def test_write_failure_is_logged(self, tmp_path, caplog):
        usage_file, _ = file_sinks(tmp_path)
        usage_file.path.mkdir()

        usage_file.write({"prompt_tokens": 1})

        assert "Failed to write usage file" in caplog.text

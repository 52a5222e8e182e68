"""Tests for structured logging."""

import logging

import pytest

from tokenwatch.logs import ALERT, StructuredFormatter, configure_logging


@pytest.fixture
def restore_logger():
    logger = logging.getLogger("tokenwatch")
    level, handlers, propagate = logger.level, list(logger.handlers), logger.propagate
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


def make_record(level, msg, data=None):
    record = logging.LogRecord("tokenwatch.test", level, __file__, 1, msg, None, None)
    if data is not None:
        record.data = data
    return record


class TestStructuredFormatter:
    def test_alert_level_name(self):
        assert logging.getLevelName(ALERT) == "ALERT"

    def test_format_with_data(self):
        line = StructuredFormatter().format(make_record(logging.INFO, "Token usage tracked", {"session": "a"}))

        assert line.startswith("[")
        assert line.endswith('[INFO] Token usage tracked {"session": "a"}')

    def test_warning_rendered_as_warn(self):
        line = StructuredFormatter().format(make_record(logging.WARNING, "careful"))
        assert line.endswith("[WARN] careful")

    def test_alert_level(self):
        line = StructuredFormatter().format(make_record(ALERT, "THRESHOLD REACHED!"))
        assert "[ALERT] THRESHOLD REACHED!" in line


class TestConfigureLogging:
    def test_file_receives_info(self, tmp_path, restore_logger):
        log_file = tmp_path / "logs" / "tokenwatch.log"
        configure_logging(logging.INFO, log_file)

        logging.getLogger("tokenwatch.usage").info("Token usage tracked", extra={"data": {"n": 1}})
        for handler in restore_logger.handlers:
            handler.flush()

        text = log_file.read_text(encoding="utf-8")
        assert '[INFO] Token usage tracked {"n": 1}' in text

    def test_reconfigure_replaces_handlers(self, restore_logger):
        configure_logging()
        configure_logging()

        assert len(restore_logger.handlers) == 1
        assert restore_logger.handlers[0].level == logging.WARNING

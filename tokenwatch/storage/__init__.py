"""Sinks for the usage bridge and the response log."""

from tokenwatch.storage.base import ResponseLog, UsageSink, response_entry, usage_snapshot
from tokenwatch.storage.files import ResponseLogFile, UsageFile, file_sinks
from tokenwatch.storage.memory import MemoryResponseLog, MemoryUsageSink

__all__ = [
    "UsageSink",
    "ResponseLog",
    "usage_snapshot",
    "response_entry",
    "MemoryUsageSink",
    "MemoryResponseLog",
    "UsageFile",
    "ResponseLogFile",
    "file_sinks",
]

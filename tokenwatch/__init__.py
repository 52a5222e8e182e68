"""tokenWatch - Token estimation, usage monitoring and compaction for LLM APIs.

Sits between a client and an upstream LLM API: estimates how many tokens a
conversation will consume before it is sent, learns from the usage the API
actually reports, and decides when history must be compacted.

Example:
    >>> from tokenwatch import CompactionEngine, CompactionConfig
    >>>
    >>> engine = CompactionEngine(CompactionConfig(preserve_patterns=[r"\\bTODO\\b"]))
    >>> decision = engine.should_compact(messages, context_window=128_000)
    >>> if decision.should_compact:
    ...     messages = await engine.compact(messages, summary_model)
"""

from tokenwatch.backends.base import Message, SummaryModel
from tokenwatch.compaction import CompactionDecision, CompactionEngine, CompactionRecord, CompactionStats
from tokenwatch.config import (
    CompactionConfig,
    DisconnectPolicy,
    EstimatorConfig,
    EstimatorStrategy,
    ProxyConfig,
    ThresholdMode,
)
from tokenwatch.estimator import Accuracy, FeedbackSample, TokenEstimate, TokenEstimator
from tokenwatch.streaming import Extraction, extract_from_json, extract_from_sse
from tokenwatch.usage import SessionUsageRecord, SessionUsageTracker, UsageAlert

__version__ = "0.1.0"

__all__ = [
    # Estimation
    "TokenEstimator",
    "TokenEstimate",
    "FeedbackSample",
    "Accuracy",
    "EstimatorConfig",
    "EstimatorStrategy",
    # Compaction
    "CompactionEngine",
    "CompactionConfig",
    "CompactionDecision",
    "CompactionRecord",
    "CompactionStats",
    "ThresholdMode",
    # Usage
    "SessionUsageTracker",
    "SessionUsageRecord",
    "UsageAlert",
    # Streaming
    "Extraction",
    "extract_from_sse",
    "extract_from_json",
    # Proxy
    "ProxyConfig",
    "DisconnectPolicy",
    # Backends
    "Message",
    "SummaryModel",
    # Version
    "__version__",
]


# Lazy imports so the core works without the web stack loaded
def __getattr__(name: str):
    if name in ("TokenWatchProxy", "create_app"):
        from tokenwatch import proxy
        return getattr(proxy, name)
    if name == "OpenAISummaryModel":
        from tokenwatch.backends.openai import OpenAISummaryModel
        return OpenAISummaryModel
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

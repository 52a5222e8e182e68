"""Configuration dataclasses for tokenWatch."""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 262_144
DEFAULT_MODEL_CONFIG = {"model_id": "default", "context_limit": DEFAULT_CONTEXT_LIMIT}


class EstimatorStrategy(str, Enum):
    """Token estimation strategy.

    STATIC: Fixed threshold, full confidence, no learning.
    ADAPTIVE: Threshold recalibrated from recent feedback samples.
    PREDICTIVE: Judges the forecast token count instead of the current one.
    """
    STATIC = "static"
    ADAPTIVE = "adaptive"
    PREDICTIVE = "predictive"


class ThresholdMode(str, Enum):
    """How the compaction engine resolves its active threshold.

    SMART: Blend the base threshold with estimator confidence.
    AGGRESSIVE: Always use the minimum threshold (compact early).
    CONSERVATIVE: Always use the maximum threshold (compact late).
    FIXED: Always use the base threshold.
    """
    SMART = "smart"
    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"
    FIXED = "fixed"


class DisconnectPolicy(str, Enum):
    """What to do with the upstream stream when the client goes away.

    DRAIN: Keep reading upstream so usage still reaches the feedback loop.
    CANCEL: Close upstream immediately and discard partial extraction.
    """
    DRAIN = "drain"
    CANCEL = "cancel"


def _check_fraction(name: str, value: float) -> None:
    if not 0 < value <= 1:
        raise ValueError(f"{name} must be in (0, 1], got {value}")


@dataclass
class StaticConfig:
    threshold: float = 0.6


@dataclass
class AdaptiveConfig:
    """Settings for the adaptive strategy.

    Attributes:
        base_threshold: Starting threshold, nudged by every learn() call.
        learning_rate: Scale applied to the relative error when learning.
        window_size: Feedback samples averaged when recomputing the threshold.
        confidence_window: Feedback samples used for the confidence figure.
        min_samples: Samples required before confidence leaves its 0.5 default.
    """
    base_threshold: float = 0.5
    learning_rate: float = 0.1
    window_size: int = 10
    confidence_window: int = 10
    min_samples: int = 5


@dataclass
class PredictiveConfig:
    """Settings for the predictive strategy.

    Attributes:
        threshold: Fraction of the context window the forecast is judged against.
        lookahead: Exponent applied to the average growth ratio.
        trend_window: Feedback samples inspected for growth ratios.
        min_samples: Samples required before trend forecasting kicks in.
        fallback_growth: Multiplier used when no trend is available.
    """
    threshold: float = 0.6
    lookahead: float = 3
    trend_window: int = 5
    min_samples: int = 3
    fallback_growth: float = 1.2


@dataclass
class EstimatorConfig:
    """Configuration for the token estimator.

    Attributes:
        strategy: Which estimation strategy to construct.
        context_window: Token budget that strategy thresholds are fractions of.
        min_threshold: Lower clamp for every strategy threshold.
        max_threshold: Upper clamp for every strategy threshold.
        history_size: Capacity of the feedback sample ring.
    """
    strategy: EstimatorStrategy = EstimatorStrategy.ADAPTIVE
    context_window: int = 1_000_000
    min_threshold: float = 0.3
    max_threshold: float = 0.8
    history_size: int = 100
    static: StaticConfig = field(default_factory=StaticConfig)
    adaptive: AdaptiveConfig = field(default_factory=AdaptiveConfig)
    predictive: PredictiveConfig = field(default_factory=PredictiveConfig)

    def __post_init__(self) -> None:
        self.strategy = EstimatorStrategy(self.strategy)
        if self.context_window <= 0:
            raise ValueError("context_window must be positive")
        if self.history_size <= 0:
            raise ValueError("history_size must be positive")
        _check_fraction("min_threshold", self.min_threshold)
        _check_fraction("max_threshold", self.max_threshold)
        if self.min_threshold > self.max_threshold:
            raise ValueError("min_threshold must not exceed max_threshold")
        if self.adaptive.window_size <= 0 or self.predictive.trend_window < 2:
            raise ValueError("feedback windows are too small")


@dataclass
class CompactionConfig:
    """Configuration for the compaction engine.

    Attributes:
        mode: How the active threshold is resolved (see ThresholdMode).
        base_threshold: Threshold used as-is by FIXED and as the SMART anchor.
        min_threshold: Threshold of AGGRESSIVE mode and lower clamp for SMART.
        max_threshold: Threshold of CONSERVATIVE mode and upper clamp for SMART.
        min_samples: Feedback samples SMART needs before blending confidence in.
        preserve_patterns: Case-insensitive regexes; matching messages are never summarized.
        max_summary_tokens: Length bound passed to the summarization model.
        summary_timeout: Seconds to wait for the summarization model.
        excerpt_chars: Characters of each message shown in the summary prompt.
        fallback_messages: Recent messages used by the local fallback summary.
        fallback_chars: Characters kept from each of those messages.
        estimator: Configuration for the engine's own estimator.
    """
    mode: ThresholdMode = ThresholdMode.SMART
    base_threshold: float = 0.5
    min_threshold: float = 0.4
    max_threshold: float = 0.7
    min_samples: int = 10
    preserve_patterns: list[str] = field(default_factory=list)
    max_summary_tokens: int = 500
    summary_timeout: float | None = 30.0
    excerpt_chars: int = 200
    fallback_messages: int = 5
    fallback_chars: int = 100
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)

    def __post_init__(self) -> None:
        self.mode = ThresholdMode(self.mode)
        for name in ("base_threshold", "min_threshold", "max_threshold"):
            _check_fraction(name, getattr(self, name))
        if not self.min_threshold <= self.base_threshold <= self.max_threshold:
            raise ValueError("thresholds must satisfy min <= base <= max")
        if self.max_summary_tokens <= 0:
            raise ValueError("max_summary_tokens must be positive")


@dataclass
class ProxyConfig:
    """Configuration for the monitoring proxy.

    Attributes:
        upstream_base_url: Scheme and authority of the upstream API.
        host: Interface to listen on.
        port: Port to listen on.
        completions_path: Path suffix identifying chat completion requests.
        context_limit: Context window of the upstream model, in tokens.
        alert_threshold: Fraction of context_limit that raises an ALERT.
        log_dir: Directory for the usage bridge and response log files.
                 In-memory sinks are used when None.
        disconnect_policy: Handling of upstream streams after a client disconnect.
        verify_tls: Verify the upstream TLS certificate.
        timeout: Upstream timeout in seconds (None waits forever).
        upstream_headers: Extra headers injected into every upstream request.
        estimator: Estimator configuration for pre-request estimates. Defaults
                   to one whose context window is context_limit.
        compaction: Configuration of the engine behind the /api/compaction routes.
    """
    upstream_base_url: str = "https://api.openai.com"
    host: str = "127.0.0.1"
    port: int = 10347
    completions_path: str = "/chat/completions"
    context_limit: int = DEFAULT_CONTEXT_LIMIT
    alert_threshold: float = 0.8
    log_dir: Path | None = None
    disconnect_policy: DisconnectPolicy = DisconnectPolicy.DRAIN
    verify_tls: bool = True
    timeout: float | None = 300.0
    upstream_headers: dict[str, str] = field(default_factory=dict)
    estimator: EstimatorConfig | None = None
    compaction: CompactionConfig | None = None

    def __post_init__(self) -> None:
        self.disconnect_policy = DisconnectPolicy(self.disconnect_policy)
        self.upstream_base_url = self.upstream_base_url.rstrip("/")
        if self.context_limit <= 0:
            raise ValueError("context_limit must be positive")
        _check_fraction("alert_threshold", self.alert_threshold)
        if self.log_dir is not None:
            self.log_dir = Path(self.log_dir)
        if self.estimator is None:
            self.estimator = EstimatorConfig(context_window=self.context_limit)
        if self.compaction is None:
            self.compaction = CompactionConfig(estimator=self.estimator)


def load_model_config(path: str | Path) -> dict[str, Any]:
    """Load the current model description from a JSON file.

    The file is expected to look like
    ``{"current_model": {"model_id": "...", "context_limit": 262144}}``.

    Args:
        path: Path to the model config file.

    Returns:
        Dictionary with at least ``model_id`` and ``context_limit``. Defaults
        are returned when the file is missing or malformed.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        model = data["current_model"]
        return {**DEFAULT_MODEL_CONFIG, **model}
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(
            "Failed to load model config, using defaults",
            extra={"data": {"path": str(path), "error": str(e)}},
        )
        return dict(DEFAULT_MODEL_CONFIG)

"""Token estimation strategies and the feedback loop that calibrates them.

All strategies score text with the same heuristic counter and differ only
in how they pick a compaction threshold and a confidence figure:

    STATIC: fixed threshold, confidence 1.0, ignores feedback.
    ADAPTIVE: recomputes its threshold from the recent actual/estimated
              ratio and nudges its base threshold on every feedback sample.
    PREDICTIVE: forecasts the next token count from the recent growth trend
                and judges the forecast, so compaction triggers early.

Feedback samples live in a fixed-capacity ring shared by every strategy.
"""

import logging
import math
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Iterator

from tokenwatch.config import EstimatorConfig, EstimatorStrategy
from tokenwatch.errors import FeedbackDataError
from tokenwatch.token_counter import count_tokens_heuristic, serialize_conversation


logger = logging.getLogger(__name__)

# Sensitivity of the adaptive threshold to the average actual/estimated ratio
RATIO_SENSITIVITY = 0.2


@dataclass
class TokenEstimate:
    """Result of a single estimation call.

    Attributes:
        tokens: Heuristic token count of the input.
        confidence: How much the estimate can be trusted, in [0, 1].
        threshold: Fraction of the context window the strategy compacts at.
        should_compact: Whether the judged count exceeds the threshold.
        reason: Human readable explanation when should_compact is true.
        predicted_tokens: Forecast count (predictive strategy only).
    """
    tokens: int
    confidence: float
    threshold: float
    should_compact: bool
    reason: str | None = None
    predicted_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass(frozen=True)
class FeedbackSample:
    """A paired (estimated, actual) token count."""
    estimated: float
    actual: float
    relative_error: float


@dataclass
class Accuracy:
    """Accuracy of the estimator over the feedback ring.

    Attributes:
        samples: Feedback samples accepted over the estimator's lifetime.
        window: Samples currently held in the ring.
        mean_absolute_percent_error: MAPE over the ring, in percent.
        confidence: ``max(0, 1 - MAPE)``; 0 with no samples.
    """
    samples: int
    window: int
    mean_absolute_percent_error: float | None
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


class FeedbackRing:
    """Fixed-capacity FIFO of feedback samples.

    Appending to a full ring evicts the oldest sample first.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._samples: deque[FeedbackSample] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, sample: FeedbackSample) -> FeedbackSample | None:
        """Add a sample.

        Returns:
            The evicted sample, if the ring was full.
        """
        evicted = None
        if len(self._samples) == self._capacity:
            evicted = self._samples.popleft()
        self._samples.append(sample)
        return evicted

    def recent(self, n: int) -> list[FeedbackSample]:
        """Return the newest ``n`` samples, oldest first."""
        if n <= 0:
            return []
        return list(self._samples)[-n:]

    def snapshot(self) -> list[FeedbackSample]:
        return list(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[FeedbackSample]:
        return iter(list(self._samples))


class EstimationStrategy:
    """Base class for estimation strategies.

    Subclasses implement ``estimate``; ``learn`` is optional and does
    nothing by default.
    """

    def __init__(self, config: EstimatorConfig) -> None:
        self._context_window = config.context_window
        self._min_threshold = config.min_threshold
        self._max_threshold = config.max_threshold

    @property
    def threshold(self) -> float:
        """The threshold the strategy currently compacts at."""
        raise NotImplementedError

    def estimate(self, text: str, history: list[FeedbackSample]) -> TokenEstimate:
        raise NotImplementedError

    def learn(self, estimated: float, actual: float) -> None:
        """Update internal state from an (estimated, actual) pair."""

    def _clamp(self, threshold: float) -> float:
        return max(self._min_threshold, min(self._max_threshold, threshold))

    def _verdict(
        self,
        tokens: int,
        judged: int,
        threshold: float,
        confidence: float,
        predicted: int | None = None,
    ) -> TokenEstimate:
        limit = threshold * self._context_window
        should_compact = judged > limit
        reason = None
        if should_compact:
            reason = f"Token count ({judged}) exceeds threshold ({math.floor(limit)})"
        return TokenEstimate(
            tokens=tokens,
            confidence=confidence,
            threshold=threshold,
            should_compact=should_compact,
            reason=reason,
            predicted_tokens=predicted,
        )


class StaticStrategy(EstimationStrategy):
    """Fixed threshold with full confidence."""

    def __init__(self, config: EstimatorConfig) -> None:
        super().__init__(config)
        self._threshold = self._clamp(config.static.threshold)

    @property
    def threshold(self) -> float:
        return self._threshold

    def estimate(self, text: str, history: list[FeedbackSample]) -> TokenEstimate:
        tokens = count_tokens_heuristic(text)
        return self._verdict(tokens, tokens, self._threshold, 1.0)


class AdaptiveStrategy(EstimationStrategy):
    """Threshold that tracks the estimator's recent bias.

    Each estimate recomputes the current threshold from the average
    ``actual / estimated`` ratio over the last ``window_size`` samples:
    ``base * (1 + (1 - avg_ratio) * 0.2)``. Each feedback sample moves
    the base threshold by the relative error times the learning rate.
    """

    def __init__(self, config: EstimatorConfig) -> None:
        super().__init__(config)
        settings = config.adaptive
        self._learning_rate = settings.learning_rate
        self._window_size = settings.window_size
        self._confidence_window = settings.confidence_window
        self._min_samples = settings.min_samples
        self._base_threshold = self._clamp(settings.base_threshold)
        self._current_threshold = self._base_threshold

    @property
    def threshold(self) -> float:
        return self._current_threshold

    @property
    def base_threshold(self) -> float:
        return self._base_threshold

    def estimate(self, text: str, history: list[FeedbackSample]) -> TokenEstimate:
        tokens = count_tokens_heuristic(text)

        recent = [s for s in history[-self._window_size:] if s.estimated > 0]
        if recent:
            avg_ratio = sum(s.actual / s.estimated for s in recent) / len(recent)
            self._current_threshold = self._clamp(
                self._base_threshold * (1 + (1 - avg_ratio) * RATIO_SENSITIVITY)
            )

        return self._verdict(
            tokens, tokens, self._current_threshold, self._confidence(history)
        )

    def learn(self, estimated: float, actual: float) -> None:
        if estimated <= 0:
            return
        error = (actual - estimated) / estimated
        self._base_threshold = self._clamp(
            self._base_threshold + error * self._learning_rate
        )

    def _confidence(self, history: list[FeedbackSample]) -> float:
        if len(history) < self._min_samples:
            return 0.5
        recent = history[-self._confidence_window:]
        avg_error = sum(s.relative_error for s in recent) / len(recent)
        return max(0.0, min(1.0, 1 - avg_error))


class PredictiveStrategy(EstimationStrategy):
    """Judge the forecast token count rather than the current one.

    The forecast compounds the average growth ratio between consecutive
    actual counts, raised to the ``lookahead`` power. With too little or
    degenerate history it falls back to ``current * fallback_growth``.
    """

    def __init__(self, config: EstimatorConfig) -> None:
        super().__init__(config)
        settings = config.predictive
        self._threshold = self._clamp(settings.threshold)
        self._lookahead = settings.lookahead
        self._trend_window = settings.trend_window
        self._min_samples = settings.min_samples
        self._fallback_growth = settings.fallback_growth

    @property
    def threshold(self) -> float:
        return self._threshold

    def estimate(self, text: str, history: list[FeedbackSample]) -> TokenEstimate:
        tokens = count_tokens_heuristic(text)
        predicted = self.predict(history, tokens)
        confidence = 0.5 if len(history) < 5 else 0.8
        return self._verdict(tokens, predicted, self._threshold, confidence, predicted)

    def predict(self, history: list[FeedbackSample], current: int) -> int:
        fallback = math.ceil(current * self._fallback_growth)
        if len(history) < self._min_samples:
            return fallback

        recent = history[-self._trend_window:]
        growth_rates = []
        for previous, sample in zip(recent, recent[1:]):
            if previous.actual <= 0:
                continue
            rate = sample.actual / previous.actual
            if math.isfinite(rate) and rate > 0:
                growth_rates.append(rate)

        if not growth_rates:
            return fallback

        avg_growth = sum(growth_rates) / len(growth_rates)
        try:
            predicted = current * math.pow(avg_growth, self._lookahead)
        except OverflowError:
            return fallback
        return math.ceil(predicted) if math.isfinite(predicted) else fallback


_STRATEGIES: dict[EstimatorStrategy, type[EstimationStrategy]] = {
    EstimatorStrategy.STATIC: StaticStrategy,
    EstimatorStrategy.ADAPTIVE: AdaptiveStrategy,
    EstimatorStrategy.PREDICTIVE: PredictiveStrategy,
}


class TokenEstimator:
    """Pre-request token estimator with a learning feedback loop.

    Example:
        >>> estimator = TokenEstimator(EstimatorConfig(strategy="adaptive"))
        >>> estimate = estimator.estimate([{"role": "user", "content": "Hi"}])
        >>> estimator.feedback(estimate.tokens, actual=12)
        >>> estimator.accuracy().samples
        1
    """

    def __init__(self, config: EstimatorConfig | None = None) -> None:
        """Initialize the estimator.

        Args:
            config: Estimator configuration. Uses defaults if None.
        """
        self._config = config or EstimatorConfig()
        self._strategy = _STRATEGIES[self._config.strategy](self._config)
        self._ring = FeedbackRing(self._config.history_size)
        self._accepted = 0

    @property
    def config(self) -> EstimatorConfig:
        return self._config

    @property
    def strategy(self) -> EstimationStrategy:
        """The active estimation strategy."""
        return self._strategy

    @property
    def strategy_name(self) -> str:
        return self._config.strategy.value

    @property
    def current_threshold(self) -> float:
        """The active strategy's current threshold."""
        return self._strategy.threshold

    @property
    def history(self) -> list[FeedbackSample]:
        """Feedback samples in the ring, oldest first."""
        return self._ring.snapshot()

    def count(self, content: Any) -> int:
        """Heuristic token count without consulting the strategy."""
        return count_tokens_heuristic(serialize_conversation(content))

    def estimate(self, content: Any) -> TokenEstimate:
        """Estimate tokens for a text or conversation.

        Args:
            content: A string, a list of messages, or any JSON value.

        Returns:
            A fresh TokenEstimate.
        """
        text = serialize_conversation(content)
        return self._strategy.estimate(text, self._ring.snapshot())

    def feedback(self, estimated: Any, actual: Any) -> FeedbackSample | None:
        """Record an actual token count for a previous estimate.

        Invalid samples (missing, non-numeric, non-finite or non-positive
        actual counts) are skipped.

        Args:
            estimated: Previously estimated tokens.
            actual: Actual token count reported by the API.

        Returns:
            The recorded sample, or None if it was skipped.
        """
        try:
            sample = _make_sample(estimated, actual)
        except FeedbackDataError as e:
            logger.debug("Feedback skipped", extra={"data": {"reason": str(e)}})
            return None

        self._ring.append(sample)
        self._accepted += 1
        self._strategy.learn(sample.estimated, sample.actual)
        return sample

    def accuracy(self) -> Accuracy:
        """Accuracy statistics over the feedback ring."""
        samples = self._ring.snapshot()
        if not samples:
            return Accuracy(
                samples=self._accepted,
                window=0,
                mean_absolute_percent_error=None,
                confidence=0.0,
            )

        mape = sum(s.relative_error for s in samples) / len(samples)
        return Accuracy(
            samples=self._accepted,
            window=len(samples),
            mean_absolute_percent_error=mape * 100,
            confidence=max(0.0, 1 - mape),
        )

    def reset(self) -> None:
        """Forget all feedback and rebuild the strategy."""
        self._ring.clear()
        self._accepted = 0
        self._strategy = _STRATEGIES[self._config.strategy](self._config)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _make_sample(estimated: Any, actual: Any) -> FeedbackSample:
    if not _is_number(actual) or not math.isfinite(actual) or actual <= 0:
        raise FeedbackDataError(f"invalid actual token count: {actual!r}")
    if not _is_number(estimated) or not math.isfinite(estimated) or estimated < 0:
        raise FeedbackDataError(f"invalid estimated token count: {estimated!r}")
    return FeedbackSample(
        estimated=estimated,
        actual=actual,
        relative_error=abs(estimated - actual) / actual,
    )

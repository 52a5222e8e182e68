"""Compaction decision and execution engine.

Decides when a conversation has grown past its threshold and shrinks it:
messages matching a preserve pattern are kept verbatim, everything else is
replaced by a single ``[Context Summary]`` system message.

Result structure: [preserved messages..., summary]
"""

import logging
import math
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from tokenwatch.backends.base import Message, SummaryMessage, SummaryModel
from tokenwatch.config import CompactionConfig, ThresholdMode
from tokenwatch.errors import SummarizationError
from tokenwatch.estimator import TokenEstimator
from tokenwatch.summarizer import fallback_summary, generate_summary
from tokenwatch.token_counter import message_text, serialized_size


logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Context Summary] "

# The smart threshold scales the base by 0.8 at zero confidence and 1.2 at full confidence
SMART_FLOOR = 0.8
SMART_SPAN = 0.4


@dataclass
class CompactionDecision:
    """Outcome of ``CompactionEngine.should_compact``.

    Attributes:
        should_compact: Whether the conversation exceeds the threshold.
        estimated_tokens: Estimated tokens of the whole conversation.
        threshold: Active threshold as a fraction of the context window.
        threshold_tokens: Active threshold in tokens.
        confidence: Estimator confidence for this estimate.
        reason: Explanation when should_compact is true.
    """
    should_compact: bool
    estimated_tokens: int
    threshold: float
    threshold_tokens: int
    confidence: float
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CompactionRecord:
    """One compaction event."""
    timestamp: str
    original_tokens: int
    summary_tokens: int
    duration_ms: float
    compression_ratio: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CompactionStats:
    """Aggregate statistics over all compactions."""
    count: int = 0
    avg_compression: float = 0.0
    total_tokens_saved: int = 0
    avg_duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compression_ratio(original_size: int, new_size: int) -> float:
    """Fraction of the original size removed: ``1 - new / original``."""
    if original_size <= 0:
        return 0.0
    return 1 - new_size / original_size


class CompactionEngine:
    """Decides when to compact a conversation and performs the compaction.

    The engine shares its TokenEstimator with whoever feeds it actual
    usage, so the SMART threshold follows the estimator's confidence.

    Example:
        >>> engine = CompactionEngine(CompactionConfig(preserve_patterns=["TODO"]))
        >>> decision = engine.should_compact(conversation, context_window=128_000)
        >>> if decision.should_compact:
        ...     conversation = await engine.compact(conversation, summary_model)
    """

    def __init__(
        self,
        config: CompactionConfig | None = None,
        estimator: TokenEstimator | None = None,
        on_compact: Callable[[CompactionRecord], None] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Compaction configuration. Uses defaults if None.
            estimator: Estimator to share. A new one is built from
                       ``config.estimator`` if None.
            on_compact: Optional callback called after every compaction.
        """
        self._config = config or CompactionConfig()
        self._estimator = estimator or TokenEstimator(self._config.estimator)
        self._on_compact = on_compact
        self._patterns = [re.compile(p, re.IGNORECASE) for p in self._config.preserve_patterns]
        self._history: list[CompactionRecord] = []

    @property
    def config(self) -> CompactionConfig:
        return self._config

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    @property
    def history(self) -> list[CompactionRecord]:
        """All compaction records, oldest first."""
        return self._history.copy()

    def threshold(self) -> float:
        """Resolve the active threshold for the configured mode."""
        mode = self._config.mode
        if mode == ThresholdMode.SMART:
            return self._smart_threshold()
        if mode == ThresholdMode.AGGRESSIVE:
            return self._config.min_threshold
        if mode == ThresholdMode.CONSERVATIVE:
            return self._config.max_threshold
        return self._config.base_threshold

    def _smart_threshold(self) -> float:
        accuracy = self._estimator.accuracy()
        if accuracy.samples < self._config.min_samples:
            return self._config.base_threshold

        adjusted = self._config.base_threshold * (SMART_FLOOR + accuracy.confidence * SMART_SPAN)
        return max(self._config.min_threshold, min(self._config.max_threshold, adjusted))

    def should_compact(
        self,
        conversation: list[Message],
        context_window: int = 1_000_000,
    ) -> CompactionDecision:
        """Check whether a conversation should be compacted.

        Args:
            conversation: Messages to check.
            context_window: Token budget of the target model.

        Returns:
            The decision, with the estimate and threshold it was based on.
        """
        estimate = self._estimator.estimate(conversation)
        threshold = self.threshold()
        limit = threshold * context_window
        should_compact = estimate.tokens > limit

        reason = None
        if should_compact:
            reason = f"Token count ({estimate.tokens}) exceeds threshold ({math.floor(limit)})"

        return CompactionDecision(
            should_compact=should_compact,
            estimated_tokens=estimate.tokens,
            threshold=threshold,
            threshold_tokens=math.floor(limit),
            confidence=estimate.confidence,
            reason=reason,
        )

    def is_preserved(self, message: Message) -> bool:
        """Whether a message matches any preserve pattern."""
        content = message_text(message)
        return any(p.search(content) for p in self._patterns)

    def partition(self, conversation: list[Message]) -> tuple[list[Message], list[Message]]:
        """Split a conversation into (preserved, summarizable), keeping order."""
        preserved: list[Message] = []
        summarizable: list[Message] = []
        for message in conversation:
            (preserved if self.is_preserved(message) else summarizable).append(message)
        return preserved, summarizable

    async def compact(
        self,
        conversation: list[Message],
        summarizer: SummaryModel | None = None,
    ) -> list[Message]:
        """Compact a conversation.

        The input list is never modified. When there is nothing to
        summarize, a copy of the conversation is returned and no record is
        kept.

        Args:
            conversation: Messages to compact.
            summarizer: Optional summarization model. The local fallback
                        summary is used when it is missing or fails.

        Returns:
            Preserved messages followed by one summary system message.
        """
        start = time.perf_counter()
        preserved, summarizable = self.partition(conversation)

        if not summarizable:
            logger.debug("Nothing to compact", extra={"data": {"preserved": len(preserved)}})
            return list(conversation)

        summary = await self._summarize(summarizable, summarizer)

        summary_message: SummaryMessage = {
            "role": "system",
            "content": SUMMARY_PREFIX + summary,
            "compaction": {
                "original_count": len(summarizable),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        compacted: list[Message] = [*preserved, summary_message]

        duration_ms = (time.perf_counter() - start) * 1000
        record = CompactionRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            original_tokens=self._estimator.count(summarizable),
            summary_tokens=self._estimator.count(summary),
            duration_ms=duration_ms,
            compression_ratio=compression_ratio(
                serialized_size(conversation), serialized_size(compacted)
            ),
        )
        self._history.append(record)

        logger.info(
            "Conversation compacted",
            extra={"data": {
                "messages_before": len(conversation),
                "messages_after": len(compacted),
                "compression_ratio": round(record.compression_ratio, 3),
            }},
        )

        if self._on_compact:
            self._on_compact(record)

        return compacted

    async def _summarize(
        self,
        messages: list[Message],
        summarizer: SummaryModel | None,
    ) -> str:
        config = self._config
        if summarizer is not None:
            try:
                return await generate_summary(
                    summarizer,
                    messages,
                    max_tokens=config.max_summary_tokens,
                    timeout=config.summary_timeout,
                    excerpt_chars=config.excerpt_chars,
                )
            except SummarizationError as e:
                logger.warning(
                    "Summary generation failed, using fallback",
                    extra={"data": {"error": str(e)}},
                )

        return fallback_summary(messages, config.fallback_messages, config.fallback_chars)

    def stats(self) -> CompactionStats:
        """Aggregate statistics over all recorded compactions."""
        if not self._history:
            return CompactionStats()

        count = len(self._history)
        return CompactionStats(
            count=count,
            avg_compression=sum(r.compression_ratio for r in self._history) / count,
            total_tokens_saved=sum(r.original_tokens - r.summary_tokens for r in self._history),
            avg_duration_ms=sum(r.duration_ms for r in self._history) / count,
        )

"""Token counting utilities.

Two counters live here:

- ``count_tokens_heuristic``: the cheap, deterministic approximation every
  estimation strategy shares. It is stable and monotonic in input size but
  not token-exact; the feedback loop corrects its bias over time.
- ``count_tokens_tiktoken``: an exact BPE count, used as a reference when
  calibrating the heuristic offline.
"""

import json
import math
import re
from typing import Any, Mapping

import tiktoken


_IDEOGRAPH = re.compile(r"[\u4e00-\u9fa5]")
_ALPHA_RUN = re.compile(r"[a-zA-Z]+")
_DIGIT_RUN = re.compile(r"[0-9]+")
_SPACE_RUN = re.compile(r"\s+")

IDEOGRAPH_WEIGHT = 1.0
ALPHA_RUN_WEIGHT = 0.3
DIGIT_RUN_WEIGHT = 0.25
SPACE_RUN_WEIGHT = 0.1
SYMBOL_WEIGHT = 0.5

# Cache for tokenizer encodings
_ENCODING_CACHE: dict[str, tiktoken.Encoding] = {}


def count_tokens_heuristic(text: str) -> int:
    """Approximate the token count of a text.

    Ideographs count one each, alphabetic, digit and whitespace runs count
    once per run, and whatever length is left over is scored as symbol
    density.

    Args:
        text: Text to score.

    Returns:
        Ceiling of the weighted bucket sum (0 for empty text).
    """
    if not text:
        return 0

    ideographs = len(_IDEOGRAPH.findall(text))
    alpha_runs = len(_ALPHA_RUN.findall(text))
    digit_runs = len(_DIGIT_RUN.findall(text))
    space_runs = len(_SPACE_RUN.findall(text))
    symbols = len(text) - ideographs - alpha_runs - digit_runs - space_runs

    return math.ceil(
        ideographs * IDEOGRAPH_WEIGHT
        + alpha_runs * ALPHA_RUN_WEIGHT
        + digit_runs * DIGIT_RUN_WEIGHT
        + space_runs * SPACE_RUN_WEIGHT
        + symbols * SYMBOL_WEIGHT
    )


def message_text(message: Mapping[str, Any]) -> str:
    """Extract the plain text of a message.

    Falls back from ``content`` to ``text``. Multi-part contents (lists of
    ``{"type": "text", "text": ...}`` parts) are flattened to their text.
    """
    content = message.get("content") or message.get("text") or ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "\n".join(parts)
    return str(content)


def serialize_conversation(content: Any) -> str:
    """Turn an estimate input into a single string.

    Strings pass through, message lists are joined by newline, anything else
    is serialized as JSON.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            message_text(m) if isinstance(m, Mapping) else "" for m in content
        )
    return json.dumps(content, ensure_ascii=False, default=str)


def serialized_size(value: Any) -> int:
    """Length of the compact JSON serialization of a value.

    Used as a cheap size proxy when computing compression ratios.
    """
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str))


def _get_encoding(model: str) -> tiktoken.Encoding:
    """Get or create a tiktoken encoding for a model.

    Args:
        model: Model name (e.g., "gpt-4", "gpt-4o").

    Returns:
        Tiktoken encoding for the model.
    """
    if model not in _ENCODING_CACHE:
        try:
            _ENCODING_CACHE[model] = tiktoken.encoding_for_model(model)
        except KeyError:
            # Fallback to cl100k_base for unknown models
            _ENCODING_CACHE[model] = tiktoken.get_encoding("cl100k_base")

    return _ENCODING_CACHE[model]


def count_tokens_tiktoken(text: str, model: str = "gpt-4") -> int:
    """Count tokens in a text with a real BPE encoding.

    Args:
        text: Text to count tokens for.
        model: Model name for encoding selection.

    Returns:
        Token count.
    """
    encoding = _get_encoding(model)
    return len(encoding.encode(text, disallowed_special=()))

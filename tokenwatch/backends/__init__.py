"""Collaborator backends (summarization models)."""

from tokenwatch.backends.base import Message, SummaryMessage, SummaryModel

__all__ = ["Message", "SummaryMessage", "SummaryModel"]

# Lazy imports for optional dependencies
def __getattr__(name: str):
    if name == "OpenAISummaryModel":
        from tokenwatch.backends.openai import OpenAISummaryModel
        return OpenAISummaryModel
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

"""Exception types raised inside tokenWatch.

Only RequestParseError and UpstreamTransportError ever reach a client (as
400 and 502 responses). The others are caught where they occur and turned
into a log line plus a fallback.
"""


class TokenWatchError(Exception):
    """Base class for all tokenWatch errors."""


class RequestParseError(TokenWatchError):
    """The inbound request body is not valid JSON."""


class UpstreamTransportError(TokenWatchError):
    """The upstream API could not be reached."""


class ResponseParseError(TokenWatchError):
    """An upstream response body or stream frame could not be decoded."""


class SummarizationError(TokenWatchError):
    """The summarization model failed, timed out or returned nothing."""


class FeedbackDataError(TokenWatchError):
    """A feedback sample carries a missing or non-finite token count."""

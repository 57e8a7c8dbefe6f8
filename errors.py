"""Exception taxonomy for retrieval and summarization failures."""

from __future__ import annotations


class PaperReaderError(Exception):
    """Base class for every failure surfaced by the core."""


class RetrievalError(PaperReaderError):
    """arXiv retrieval failed.

    ``status`` carries the HTTP status when a response was received;
    ``kind`` classifies the failure for callers that branch on it.
    """

    kind = "http"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientOverloadError(RetrievalError):
    """The service answered that it is temporarily unable to serve (HTTP 503)."""

    kind = "overload"


class ConnectivityError(RetrievalError):
    """The endpoint could not be reached at all."""

    kind = "connectivity"


class MalformedResponseError(RetrievalError):
    """The response body was not a readable Atom feed."""

    kind = "malformed"


class SummaryError(PaperReaderError):
    """Base class for summarization failures."""


class PreconditionError(SummaryError):
    """Missing credential or a provider feature that is not available."""


class StreamTransportError(SummaryError):
    """The streaming request failed before the stream completed."""


class ParseIncompleteError(SummaryError):
    """The completed stream never yielded a usable summary field."""

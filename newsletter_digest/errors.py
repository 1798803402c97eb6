from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    SOURCE = "source"
    EXTRACTION = "extraction"
    RESOLUTION = "resolution"
    SUMMARIZATION = "summarization"
    AGGREGATION = "aggregation"


class PipelineError(Exception):
    """Base class for every failure raised by a pipeline stage."""

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = dict(details or {})

    def to_details(self, **extra: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(extra)
        payload["kind"] = self.kind.value
        payload["error"] = self.message
        if self.cause is not None:
            payload["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        payload.update(self.details)
        return payload


class SourceError(PipelineError):
    """Raised when the mail provider cannot be authenticated, listed or read."""

    kind = ErrorKind.SOURCE


class ExtractionError(PipelineError):
    """Raised when newsletter HTML cannot be parsed for links."""

    kind = ErrorKind.EXTRACTION


class ResolutionError(PipelineError):
    """Describes a failed link resolution. Never propagated to callers of the resolver."""

    kind = ErrorKind.RESOLUTION


class SummarizationError(PipelineError):
    """Raised when an LLM summary cannot be produced or stored."""

    kind = ErrorKind.SUMMARIZATION

    def __init__(self, message: str, *, reason: str = "api", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.details.setdefault("reason", reason)


class AggregationError(PipelineError):
    """Raised when recent summaries cannot be merged into an aggregate."""

    kind = ErrorKind.AGGREGATION


def error_details(exc: BaseException, **extra: Any) -> Dict[str, Any]:
    """Log-ready details for any exception; pipeline errors keep their kind and cause."""
    if isinstance(exc, PipelineError):
        return exc.to_details(**extra)
    payload: Dict[str, Any] = dict(extra)
    payload["error"] = str(exc) or type(exc).__name__
    return payload

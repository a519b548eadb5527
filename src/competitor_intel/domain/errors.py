"""Domain-specific errors.

These errors are mapped to HTTP status codes in `http_app`. Retryability is a
property of the class: the fetcher and search client retry only errors whose
`retryable` flag is set.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class CompetitorIntelError(Exception):
    """Base class for all domain errors."""

    retryable: bool = False

    def __init__(self, message: str, detail: str | None = None, *, code: str = "INTERNAL_ERROR"):
        super().__init__(message)
        self.info = DomainErrorInfo(code=code, message=message, detail=detail)


@dataclass(frozen=True)
class DomainErrorInfo:
    code: str
    message: str
    detail: Optional[str] = None


class InvalidInputError(CompetitorIntelError):
    """Raised when request/config validation fails."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="INVALID_INPUT")


class InvalidURLError(CompetitorIntelError):
    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="INVALID_URL")


class NotFoundError(CompetitorIntelError):
    """Terminal: the resource does not exist (HTTP 404)."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="NOT_FOUND")


class AccessDeniedError(CompetitorIntelError):
    """Terminal for the whole domain (HTTP 401/403, robots disallow)."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="ACCESS_DENIED")


class RateLimitedError(CompetitorIntelError):
    retryable = True

    def __init__(self, message: str, detail: str | None = None, *, retry_after: float | None = None):
        super().__init__(message, detail, code="RATE_LIMITED")
        self.retry_after = retry_after


class ServerError(CompetitorIntelError):
    retryable = True

    def __init__(self, message: str, detail: str | None = None, *, status: int | None = None):
        super().__init__(message, detail, code="SERVER_ERROR")
        self.status = status


class NetworkTimeoutError(CompetitorIntelError):
    retryable = True

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="NETWORK_TIMEOUT")


class ParseFailureError(CompetitorIntelError):
    """LLM output could not be turned into the expected structure."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="PARSE_FAILURE")


class LLMRequestError(CompetitorIntelError):
    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="LLM_REQUEST_FAILED")


class ModelSaturationError(CompetitorIntelError):
    """Every LLM backend stayed rate-limited through the full retry schedule."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="MODEL_SATURATION")


class CatalogAnalysisError(CompetitorIntelError):
    """The mandatory product catalog could not be analyzed."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="CATALOG_ANALYSIS_FAILED")


class CompetitorAnalysisError(CompetitorIntelError):
    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="COMPETITOR_ANALYSIS_FAILED")


class DeadlineExceededError(CompetitorIntelError):
    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message, detail, code="DEADLINE_EXCEEDED")

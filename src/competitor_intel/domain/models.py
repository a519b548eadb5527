"""Framework-agnostic domain models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_URL = "INVALID_URL"
    NOT_FOUND = "NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    PARSE_FAILURE = "PARSE_FAILURE"
    LLM_REQUEST_FAILED = "LLM_REQUEST_FAILED"
    MODEL_SATURATION = "MODEL_SATURATION"
    CATALOG_ANALYSIS_FAILED = "CATALOG_ANALYSIS_FAILED"
    COMPETITOR_ANALYSIS_FAILED = "COMPETITOR_ANALYSIS_FAILED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TaskComplexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class SearchType(str, Enum):
    MAPS = "maps"
    SHOPPING = "shopping"
    LOCAL = "local"
    ORGANIC = "organic"


@dataclass(frozen=True)
class ModelDescriptor:
    """Static description of one LLM backend model (caps are per usage window)."""

    provider: str
    model_id: str
    tokens_per_minute: int
    requests_per_minute: int
    quality_score: float
    throughput: float
    latency: float
    context_window: int
    complexity_rating: float


@dataclass(frozen=True)
class PriceRangeHint:
    min: Optional[float] = None
    max: Optional[float] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class SearchCandidate:
    """A domain surfaced by the search API, with whatever metadata came with it."""

    domain: str
    title: Optional[str] = None
    snippet: Optional[str] = None
    url: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    price_range: Optional[PriceRangeHint] = None

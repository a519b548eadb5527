"""Model catalog and backend wiring.

The built-in catalog lists the hosted models the router balances across.
`MODEL_CATALOG_JSON` can replace it, e.g.::

    [{"provider": "ollama", "model_id": "qwen2.5:7b", "tokens_per_minute": 100000,
      "requests_per_minute": 600, "quality_score": 60, "throughput": 40,
      "latency": 0.8, "context_window": 32000, "complexity_rating": 55}]
"""

from __future__ import annotations

import json

from ..config.settings import CompetitorIntelSettings
from ..domain.models import ModelDescriptor
from ..observability.logger import get_logger
from .ollama_adapter import OllamaAdapter
from .openai_adapter import OpenAIAdapter
from .runtime import LLMRuntime

logger = get_logger(__name__)

DEFAULT_MODELS: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        provider="groq",
        model_id="llama3-70b-8192",
        tokens_per_minute=6000,
        requests_per_minute=30,
        quality_score=74,
        throughput=71.5,
        latency=0.50,
        context_window=128000,
        complexity_rating=90,
    ),
    ModelDescriptor(
        provider="gemini",
        model_id="gemini-2.0-flash",
        tokens_per_minute=6000,
        requests_per_minute=30,
        quality_score=75,
        throughput=80,
        latency=0.45,
        context_window=32000,
        complexity_rating=85,
    ),
    ModelDescriptor(
        provider="groq",
        model_id="deepseek-r1-distill-llama-70b",
        tokens_per_minute=6000,
        requests_per_minute=30,
        quality_score=70,
        throughput=65,
        latency=0.55,
        context_window=128000,
        complexity_rating=85,
    ),
    ModelDescriptor(
        provider="groq",
        model_id="llama3-8b-8192",
        tokens_per_minute=6000,
        requests_per_minute=30,
        quality_score=65,
        throughput=120,
        latency=0.35,
        context_window=8192,
        complexity_rating=60,
    ),
)


def load_descriptors(settings: CompetitorIntelSettings) -> list[ModelDescriptor]:
    if not settings.model_catalog_json:
        return list(DEFAULT_MODELS)
    try:
        raw = json.loads(settings.model_catalog_json)
        if not isinstance(raw, list):
            raise ValueError("model_catalog_json must be a JSON array")
        return [ModelDescriptor(**item) for item in raw]
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid model_catalog_json: {e}") from e


def build_backends(settings: CompetitorIntelSettings) -> dict[str, LLMRuntime]:
    """One adapter per provider that has credentials (or is enabled, for Ollama)."""
    backends: dict[str, LLMRuntime] = {}

    if settings.groq_api_key:
        backends["groq"] = OpenAIAdapter(
            provider="groq", api_key=settings.groq_api_key, base_url=settings.groq_base_url
        )
    else:
        logger.warning("llm_provider_not_configured", provider="groq", missing="GROQ_API_KEY")

    if settings.gemini_api_key:
        backends["gemini"] = OpenAIAdapter(
            provider="gemini", api_key=settings.gemini_api_key, base_url=settings.gemini_base_url
        )
    else:
        logger.warning("llm_provider_not_configured", provider="gemini", missing="GEMINI_API_KEY")

    if settings.openai_api_key:
        backends["openai"] = OpenAIAdapter(
            provider="openai", api_key=settings.openai_api_key, base_url=settings.openai_base_url
        )

    if settings.ollama_enable:
        backends["ollama"] = OllamaAdapter(host=settings.ollama_host, port=settings.ollama_port)

    return backends

"""OpenAI-compatible chat completions adapter.

Serves OpenAI itself plus Groq and Gemini, which expose OpenAI-compatible
endpoints (only `base_url` and the API key differ).
"""

from __future__ import annotations

import asyncio

import openai
from openai import AsyncOpenAI

from ..domain.errors import LLMRequestError, NetworkTimeoutError, RateLimitedError
from ..observability.logger import get_logger
from .runtime import LLMRequest, LLMRuntime

logger = get_logger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant that responds in JSON format when requested."


def _retry_after(err: openai.APIStatusError) -> float | None:
    try:
        value = err.response.headers.get("retry-after")
    except AttributeError:
        return None
    try:
        return float(value) if value else None
    except ValueError:
        return None


class OpenAIAdapter(LLMRuntime):
    def __init__(self, *, provider: str, api_key: str, base_url: str | None = None):
        """
        Initialize the adapter.

        Args:
            provider: Provider name used in logs ("openai", "groq", "gemini").
            api_key: Provider API key.
            base_url: OpenAI-compatible base URL. If None, uses the OpenAI default.
        """
        if not api_key:
            raise ValueError(f"{provider} API key required")
        self._provider = provider
        # Retries are the router's job (admission + backoff), not the client's.
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def complete(self, req: LLMRequest) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=req.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": req.prompt},
                ],
                temperature=float(req.temperature),
                max_tokens=int(req.max_tokens),
                timeout=max(1.0, float(req.timeout_seconds)),
            )
        except openai.RateLimitError as e:
            raise RateLimitedError(
                f"{self._provider}_rate_limited", detail=str(e), retry_after=_retry_after(e)
            ) from e
        except (openai.APITimeoutError, asyncio.TimeoutError) as e:
            raise NetworkTimeoutError(f"{self._provider}_timeout", detail=str(e)) from e
        except openai.APIConnectionError as e:
            raise NetworkTimeoutError(f"{self._provider}_network_error", detail=str(e)) from e
        except openai.APIError as e:
            raise LLMRequestError(f"{self._provider}_request_failed", detail=str(e)) from e

        if not response.choices:
            raise LLMRequestError(f"{self._provider}_response_invalid", detail="no choices in response")
        text = response.choices[0].message.content or ""
        if not isinstance(text, str):
            raise LLMRequestError(f"{self._provider}_response_invalid")
        return text

    async def close(self) -> None:
        await self._client.close()

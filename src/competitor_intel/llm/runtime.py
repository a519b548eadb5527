"""LLM runtime interface.

The router talks to every backend through this interface; one adapter
instance serves all models of its provider.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LLMRequest:
    prompt: str
    provider: str
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float
    json_output: bool = True


class LLMRuntime:
    async def complete(self, req: LLMRequest) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None

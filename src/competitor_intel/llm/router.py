"""Model router: complexity-aware model selection under per-model rate limits.

Each model owns a usage counter (reset every usage window) and a bounded FIFO
queue. Callers `invoke()`; the request is queued on the selected model and a
per-model timer drains up to `batch_size` requests every `batch_window`,
one at a time with a short pause between calls. Admission is checked before
every dispatch, so a model is never called once its token or request cap for
the current window is reached.

Usage::

    async with ModelRouter(DEFAULT_MODELS, backends) as router:
        text = await router.invoke("extract_offerings", prompt)
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional, Sequence

from ..domain.errors import (
    DeadlineExceededError,
    LLMRequestError,
    ModelSaturationError,
    RateLimitedError,
)
from ..domain.models import ModelDescriptor, TaskComplexity
from ..observability.logger import get_logger
from ..utils.deadline import Deadline
from ..utils.json_extract import Expected, parse_json, parse_json_strict
from .runtime import LLMRequest, LLMRuntime

logger = get_logger(__name__)

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0, 8.0, 16.0)

# Weights per complexity: quality, throughput, latency, context window, complexity rating
_WEIGHTS: dict[TaskComplexity, tuple[float, float, float, float, float]] = {
    TaskComplexity.SIMPLE: (0.2, 0.3, 0.3, 0.1, 0.1),
    TaskComplexity.MEDIUM: (0.3, 0.2, 0.2, 0.1, 0.2),
    TaskComplexity.COMPLEX: (0.3, 0.1, 0.1, 0.2, 0.3),
}

JSON_OUTPUT_INSTRUCTIONS = """

Instructions:
1. Return ONLY a valid JSON object/array
2. Do not include any explanatory text
3. Do not include markdown formatting
4. Do not include code blocks
5. The response should be parseable by JSON.parse()

Example of correct format:
{"key": "value"} or ["item1", "item2"]"""


def _now() -> float:
    return time.monotonic()


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def enforce_json_output(prompt: str) -> str:
    return prompt.strip() + JSON_OUTPUT_INSTRUCTIONS


def classify_complexity(prompt: str) -> TaskComplexity:
    wants_json = "Return ONLY a JSON" in prompt
    multi_step = "considering:" in prompt or "steps:" in prompt
    analytical = "Analyze" in prompt or "Compare" in prompt
    hits = sum((wants_json, multi_step, analytical))
    if hits == 3:
        return TaskComplexity.COMPLEX
    if hits > 0:
        return TaskComplexity.MEDIUM
    return TaskComplexity.SIMPLE


def score_model(model: ModelDescriptor, complexity: TaskComplexity) -> float:
    wq, wt, wl, wc, wx = _WEIGHTS[complexity]
    return (
        wq * (model.quality_score / 100)
        + wt * (model.throughput / 120)
        + wl * (1 - model.latency)
        + wc * (model.context_window / 128000)
        + wx * (model.complexity_rating / 100)
    )


def estimate_tokens(result: Any) -> float:
    """Approximate tokens from the serialized result length."""
    return len(json.dumps(result, default=str)) / 4


@dataclass
class ModelUsage:
    window_start: float
    tokens_used: float = 0.0
    requests_used: int = 0


@dataclass
class _PendingRequest:
    operation: str
    prompt: str
    future: asyncio.Future
    deadline: Optional[Deadline]
    json_output: bool


@dataclass
class _BatchQueue:
    requests: deque = field(default_factory=deque)
    timestamp: float = field(default_factory=_now)
    draining: bool = False


class ModelRouter:
    """Owns model usage and batch queues for the lifetime of the service.

    Only descriptors whose provider has a backend are routable.
    """

    def __init__(
        self,
        descriptors: Iterable[ModelDescriptor],
        backends: Mapping[str, LLMRuntime],
        *,
        batch_size: int = 10,
        batch_window: float = 10.0,
        inter_request_delay: float = 0.1,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        max_queue_size: int = 500,
        usage_window: float = 60.0,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        timeout_seconds: float = 60.0,
        default_preferred_model: str | None = None,
    ):
        self._backends = dict(backends)
        self._descriptors: dict[str, ModelDescriptor] = {}
        for d in descriptors:
            if d.provider not in self._backends:
                logger.warning("model_skipped_no_backend", model=d.model_id, provider=d.provider)
                continue
            self._descriptors[d.model_id] = d

        self._batch_size = int(batch_size)
        self._batch_window = float(batch_window)
        self._inter_request_delay = float(inter_request_delay)
        self._retry_delays = tuple(float(x) for x in retry_delays)
        self._max_queue_size = int(max_queue_size)
        self._usage_window = float(usage_window)
        self._temperature = float(temperature)
        self._max_tokens = int(max_tokens)
        self._timeout_seconds = float(timeout_seconds)
        self._default_preferred = default_preferred_model

        self._usage: dict[str, ModelUsage] = {m: ModelUsage(window_start=_now()) for m in self._descriptors}
        self._queues: dict[str, _BatchQueue] = {m: _BatchQueue() for m in self._descriptors}
        self._drain_tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def __aenter__(self) -> ModelRouter:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def models(self) -> list[ModelDescriptor]:
        return list(self._descriptors.values())

    def start(self) -> None:
        """Start one drain timer per model (idempotent; needs a running loop)."""
        if self._closed:
            raise LLMRequestError("router_closed")
        for model_id in self._descriptors:
            task = self._drain_tasks.get(model_id)
            if task is None or task.done():
                self._drain_tasks[model_id] = asyncio.create_task(
                    self._drain_loop(model_id), name=f"router-drain-{model_id}"
                )
        logger.info(
            "model_router_started",
            models=list(self._descriptors),
            batch_size=self._batch_size,
            batch_window_s=self._batch_window,
        )

    async def close(self) -> None:
        """Stop the timers and fail whatever is still queued."""
        self._closed = True
        tasks = list(self._drain_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_tasks.clear()

        pending = 0
        for queue in self._queues.values():
            while queue.requests:
                req = queue.requests.popleft()
                if not req.future.done():
                    req.future.set_exception(LLMRequestError("router_closed", detail=req.operation))
                    pending += 1
        await asyncio.gather(*(b.close() for b in self._backends.values()), return_exceptions=True)
        logger.info("model_router_closed", failed_pending=pending)

    # ------------------------------------------------------------------
    # admission
    # ------------------------------------------------------------------
    def _reset_usage_if_needed(self, model_id: str) -> ModelUsage:
        usage = self._usage[model_id]
        now = _now()
        if now - usage.window_start >= self._usage_window:
            usage.window_start = now
            usage.tokens_used = 0.0
            usage.requests_used = 0
        return usage

    def has_headroom(self, model_id: str) -> bool:
        descriptor = self._descriptors.get(model_id)
        if descriptor is None:
            return False
        usage = self._reset_usage_if_needed(model_id)
        return (
            usage.tokens_used < descriptor.tokens_per_minute
            and usage.requests_used < descriptor.requests_per_minute
        )

    def usage(self, model_id: str) -> ModelUsage:
        """Snapshot of a model's usage in the current window."""
        return replace(self._reset_usage_if_needed(model_id))

    def _record_usage(self, model_id: str, tokens: float) -> None:
        usage = self._reset_usage_if_needed(model_id)
        usage.tokens_used += tokens
        usage.requests_used += 1

    def _mark_saturated(self, model_id: str) -> None:
        """Provider said 429: treat the model as exhausted until the window resets."""
        usage = self._reset_usage_if_needed(model_id)
        descriptor = self._descriptors[model_id]
        usage.requests_used = max(usage.requests_used, descriptor.requests_per_minute)

    # ------------------------------------------------------------------
    # selection
    # ------------------------------------------------------------------
    def _pick(self, complexity: TaskComplexity, preferred: str | None) -> ModelDescriptor | None:
        if preferred and self.has_headroom(preferred):
            return self._descriptors[preferred]
        available = [d for d in self._descriptors.values() if self.has_headroom(d.model_id)]
        if not available:
            return None
        # Ties resolve in catalog order
        return max(available, key=lambda d: score_model(d, complexity))

    async def select_model(self, prompt: str, preferred_model: str | None = None) -> ModelDescriptor:
        """Pick a model with headroom, backing off through the retry schedule.

        Raises:
            ModelSaturationError: no model had headroom after every backoff delay.
        """
        if not self._descriptors:
            raise LLMRequestError("no_llm_backends_configured")
        preferred = preferred_model or self._default_preferred
        if preferred and preferred not in self._descriptors:
            logger.warning("preferred_model_unknown", preferred_model=preferred)
            preferred = None

        complexity = classify_complexity(prompt)
        for attempt, delay in enumerate(self._retry_delays, start=1):
            chosen = self._pick(complexity, preferred)
            if chosen is not None:
                if chosen.model_id != preferred:
                    logger.debug(
                        "model_selected",
                        model=chosen.model_id,
                        provider=chosen.provider,
                        complexity=complexity.value,
                    )
                return chosen
            logger.warning("all_models_saturated_backing_off", attempt=attempt, delay_s=delay)
            await _sleep(delay)

        logger.error("model_saturation", attempts=len(self._retry_delays))
        raise ModelSaturationError(
            "All models are rate limited. Please try again later.",
            detail=f"attempts={len(self._retry_delays)}",
        )

    # ------------------------------------------------------------------
    # invocation
    # ------------------------------------------------------------------
    async def invoke(
        self,
        operation: str,
        prompt: str,
        preferred_model: str | None = None,
        deadline: Deadline | None = None,
        *,
        json_output: bool = True,
    ) -> str:
        """Queue `prompt` on the selected model and wait for its raw text result."""
        if self._closed:
            raise LLMRequestError("router_closed", detail=operation)
        if deadline is not None:
            deadline.check(operation)

        model = await self.select_model(prompt, preferred_model)
        queue = self._queues[model.model_id]
        if len(queue.requests) >= self._max_queue_size:
            logger.error("model_queue_full", model=model.model_id, size=len(queue.requests))
            raise ModelSaturationError("model_queue_full", detail=model.model_id)

        if not self._drain_tasks:
            self.start()

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue.requests.append(
            _PendingRequest(
                operation=operation,
                prompt=prompt,
                future=future,
                deadline=deadline,
                json_output=json_output,
            )
        )
        logger.debug("llm_request_queued", operation=operation, model=model.model_id, depth=len(queue.requests))

        if deadline is None:
            return await future
        try:
            return await asyncio.wait_for(future, timeout=deadline.remaining())
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError("deadline_exceeded", detail=operation) from e

    async def complete(
        self,
        prompt: str,
        *,
        operation: str = "complete",
        preferred_model: str | None = None,
        deadline: Deadline | None = None,
    ) -> str:
        """Plain-text completion (no JSON enforcement)."""
        return await self.invoke(operation, prompt, preferred_model, deadline, json_output=False)

    async def invoke_json(
        self,
        operation: str,
        prompt: str,
        expected: Expected = "object",
        *,
        preferred_model: str | None = None,
        deadline: Deadline | None = None,
        strict: bool = False,
    ) -> Any:
        """`invoke` + JSON recovery; `strict` raises ParseFailureError instead of returning `{}`/`[]`."""
        text = await self.invoke(operation, prompt, preferred_model, deadline)
        if strict:
            return parse_json_strict(text, expected)
        return parse_json(text, expected)

    # ------------------------------------------------------------------
    # draining
    # ------------------------------------------------------------------
    async def _drain_loop(self, model_id: str) -> None:
        while True:
            await asyncio.sleep(self._batch_window)
            try:
                await self.drain_queue(model_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("batch_drain_failed", model=model_id, error=str(e))

    async def drain_queue(self, model_id: str) -> int:
        """Process up to `batch_size` queued requests in FIFO order; return how many were dispatched."""
        queue = self._queues[model_id]
        if queue.draining or not queue.requests:
            return 0

        queue.draining = True
        dispatched = 0
        try:
            while queue.requests and dispatched < self._batch_size:
                req: _PendingRequest = queue.requests[0]
                if req.future.done():
                    # Caller gave up (cancelled / deadline)
                    queue.requests.popleft()
                    continue
                if not self.has_headroom(model_id):
                    logger.info("batch_paused_no_headroom", model=model_id, remaining=len(queue.requests))
                    break
                queue.requests.popleft()
                if dispatched:
                    await _sleep(self._inter_request_delay)
                dispatched += 1
                await self._dispatch(self._descriptors[model_id], req)
        finally:
            queue.draining = False
            queue.timestamp = _now()
        if dispatched:
            logger.debug("batch_drained", model=model_id, dispatched=dispatched, remaining=len(queue.requests))
        return dispatched

    async def _dispatch(self, model: ModelDescriptor, req: _PendingRequest) -> None:
        if req.deadline is not None and req.deadline.expired:
            if not req.future.done():
                req.future.set_exception(DeadlineExceededError("deadline_exceeded", detail=req.operation))
            return

        timeout = self._timeout_seconds
        if req.deadline is not None:
            timeout = req.deadline.clamp(timeout)

        llm_req = LLMRequest(
            prompt=enforce_json_output(req.prompt) if req.json_output else req.prompt,
            provider=model.provider,
            model=model.model_id,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            timeout_seconds=timeout,
            json_output=req.json_output,
        )
        started = _now()
        try:
            text = await self._backends[model.provider].complete(llm_req)
        except asyncio.CancelledError:
            if not req.future.done():
                req.future.cancel()
            raise
        except Exception as e:
            # A failed call still consumed a request slot
            self._record_usage(model.model_id, 0.0)
            if isinstance(e, RateLimitedError):
                self._mark_saturated(model.model_id)
            logger.warning(
                "batch_request_failed",
                operation=req.operation,
                model=model.model_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            if not req.future.done():
                req.future.set_exception(e)
            return

        self._record_usage(model.model_id, estimate_tokens(text))
        logger.info(
            "llm_request_completed",
            operation=req.operation,
            model=model.model_id,
            provider=model.provider,
            elapsed_ms=int((_now() - started) * 1000),
        )
        if not req.future.done():
            req.future.set_result(text)

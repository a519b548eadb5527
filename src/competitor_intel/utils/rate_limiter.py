"""Async rate limiting utilities (per-domain politeness).

This module enforces a minimum interval between requests to the same domain.
A robots.txt `Crawl-delay` raises the interval for that domain only.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict
from urllib.parse import urlparse

# Upper bound honoured for robots Crawl-delay values
MAX_CRAWL_DELAY_S = 10.0


def _now() -> float:
    return time.monotonic()


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass
class _DomainState:
    lock: asyncio.Lock
    next_allowed_at: float
    min_interval_s: float | None = None


class DomainRateLimiter:
    """Per-domain rate limiter (async).

    Args:
        requests_per_second: Allowed RPS per domain. If <= 0, no default limiting is applied
            (per-domain crawl delays still are).
    """

    def __init__(self, requests_per_second: float):
        self._rps = float(requests_per_second)
        self._states: Dict[str, _DomainState] = {}
        self._global_lock = asyncio.Lock()

    def _default_interval_s(self) -> float:
        return 1.0 / self._rps if self._rps > 0 else 0.0

    async def _get_state(self, domain: str) -> _DomainState:
        async with self._global_lock:
            state = self._states.get(domain)
            if state is None:
                state = _DomainState(lock=asyncio.Lock(), next_allowed_at=0.0)
                self._states[domain] = state
            return state

    async def set_min_interval(self, url: str, seconds: float) -> None:
        """Apply a crawl delay to the URL's domain (never lowers the default interval)."""
        domain = (urlparse(url).netloc or "").lower()
        if not domain or seconds <= 0:
            return
        state = await self._get_state(domain)
        state.min_interval_s = min(float(seconds), MAX_CRAWL_DELAY_S)

    def interval_for(self, domain: str) -> float:
        state = self._states.get(domain.lower())
        custom = state.min_interval_s if state is not None else None
        return max(self._default_interval_s(), custom or 0.0)

    async def wait_for_slot(self, url: str) -> None:
        """Wait until it is allowed to perform a request to the given URL's domain."""
        parsed = urlparse(url)
        domain = (parsed.netloc or "").lower()
        if not domain:
            return

        state = await self._get_state(domain)
        interval = self.interval_for(domain)
        if interval <= 0:
            return
        async with state.lock:
            now = _now()
            if state.next_allowed_at > now:
                await _sleep(state.next_allowed_at - now)

            state.next_allowed_at = _now() + interval

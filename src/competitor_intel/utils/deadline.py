"""Deadlines threaded through a discovery run.

A `Deadline` is an absolute monotonic expiry. Every outbound call clamps its own
timeout to the remaining budget, so an expired run fails the step in flight
instead of running on unbounded.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from ..domain.errors import DeadlineExceededError


def _now() -> float:
    return time.monotonic()


@dataclass(frozen=True)
class Deadline:
    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(expires_at=_now() + max(0.0, float(seconds)))

    def remaining(self) -> float:
        return max(0.0, self.expires_at - _now())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, stage: str) -> None:
        if self.expired:
            raise DeadlineExceededError("deadline_exceeded", detail=stage)

    def clamp(self, timeout: float) -> float:
        return min(float(timeout), self.remaining())

    def earliest(self, other: Optional[Deadline]) -> Deadline:
        if other is None or self.expires_at <= other.expires_at:
            return self
        return other


def clamp_timeout(timeout: float, deadline: Deadline | None, *, stage: str) -> float:
    """Return the per-call timeout bounded by `deadline`; raise if nothing is left."""
    if deadline is None:
        return float(timeout)
    deadline.check(stage)
    return deadline.clamp(timeout)

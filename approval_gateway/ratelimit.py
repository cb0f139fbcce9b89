"""Per-key approval rate limiting.

Two limits apply to each ``"{type}:{user}"`` key:
 - an hourly cap on auto-approvals
 - a minimum delay between auto-approvals

Counts are cleared for every key once an hour has passed since the last
clear, and keys with no approval in the past hour are forgotten. The
check is lazy: it happens on ``check`` (and on ``current_hourly_count``
when given a time) instead of on a timer, so tests can drive it with a
fake clock.

Only approvals are tracked. A denied request never moves the counters.

The limiter itself holds no lock; ``PolicyEngine`` serializes check + track.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import APG_E_RATE_LIMIT_KEYS, APG_E_RATE_LIMITED, APG_E_REQUEST_DELAY
from .operations import OperationDescriptor


HOURLY_RESET_SECONDS = 3600.0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None


class ApprovalRateLimiter:
    """Keyed hourly-cap + minimum-delay limiter (per-process)."""

    def __init__(self, now: float, max_keys: int = 20000):
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._counts: Dict[str, int] = {}
        self._last_request: Dict[str, float] = {}
        self._last_reset = float(now)

    @property
    def last_reset(self) -> float:
        return self._last_reset

    def _maybe_reset(self, now: float) -> None:
        if now - self._last_reset >= HOURLY_RESET_SECONDS:
            self._counts.clear()
            # Keys idle for an hour no longer count toward max_keys.
            cutoff = now - HOURLY_RESET_SECONDS
            self._last_request = {k: t for k, t in self._last_request.items() if t > cutoff}
            self._last_reset = now

    def check(
        self,
        operation: OperationDescriptor,
        now: float,
        max_per_hour: int,
        delay_seconds: float = 0,
    ) -> RateLimitResult:
        self._maybe_reset(now)
        key = operation.rate_limit_key

        # Prevent unbounded memory growth from high-cardinality keys.
        if key not in self._counts and key not in self._last_request:
            if len(self._last_request) >= self._max_keys:
                return RateLimitResult(False, "Too many distinct rate-limit keys", APG_E_RATE_LIMIT_KEYS)

        if self._counts.get(key, 0) >= max_per_hour:
            return RateLimitResult(
                False,
                f"Hourly auto-approval limit exceeded ({max_per_hour})",
                APG_E_RATE_LIMITED,
            )

        last = self._last_request.get(key)
        required = float(delay_seconds or 0)
        if last is not None and required > 0:
            elapsed = now - last
            if elapsed < required:
                wait = math.ceil(required - elapsed)
                return RateLimitResult(
                    False,
                    f"Request delay not met. Wait {wait} seconds",
                    APG_E_REQUEST_DELAY,
                )

        return RateLimitResult(True)

    def track(self, operation: OperationDescriptor, now: float) -> None:
        """Record an approval for the operation's key."""
        key = operation.rate_limit_key
        self._counts[key] = self._counts.get(key, 0) + 1
        self._last_request[key] = now

    def hourly_count(self, operation: OperationDescriptor) -> int:
        return self._counts.get(operation.rate_limit_key, 0)

    def current_hourly_count(self, now: Optional[float] = None) -> int:
        if now is not None:
            self._maybe_reset(now)
        return max(self._counts.values(), default=0)

    def clear(self, now: float) -> None:
        self._counts.clear()
        self._last_request.clear()
        self._last_reset = now

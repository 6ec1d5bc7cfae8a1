"""Cross-process sliding-window admission control.

The limiter approximates a global cap on upstream calls per rolling window
plus a minimum spacing between calls. State lives in a shared store, so
several gateway processes see each other's calls. Coordination is advisory:
two processes can read the same count and both proceed, briefly exceeding
the cap.

Usage:
    limiter = RateLimiter(store=FileRateLimitStore())
    wait_ms = limiter.admit()
    await asyncio.sleep(wait_ms / 1000)
    limiter.record_attempt()
    ... call upstream ...
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Literal

from duckgate.gateway.ratelimit.store import (
    DEFAULT_STALE_AFTER_MS,
    MemoryRateLimitStore,
    RateLimitState,
    RateLimitStore,
    now_ms,
)

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Limits applied by RateLimiter. Durations are milliseconds."""

    max_requests: int = 20
    window_ms: int = 60_000
    min_interval_ms: int = 1_000
    safety_margin_ms: int = 100
    stale_after_ms: int = DEFAULT_STALE_AFTER_MS


@dataclass(frozen=True)
class RateLimitStatus:
    """Point-in-time view of the shared rate-limit state."""

    requests_in_window: int
    max_requests: int
    time_until_window_reset_ms: float
    is_limited: bool
    recommended_wait_ms: float
    data_source: Literal["shared", "default"]
    owner_id: str | None = None
    last_updated: float | None = None
    retry_after_ms: int | None = None

    @property
    def utilization_pct(self) -> float:
        if self.max_requests <= 0:
            return 100.0
        return self.requests_in_window / self.max_requests * 100

    def to_dict(self) -> dict[str, object]:
        return {
            "requests_in_window": self.requests_in_window,
            "max_requests": self.max_requests,
            "utilization_pct": round(self.utilization_pct, 1),
            "time_until_window_reset_ms": int(self.time_until_window_reset_ms),
            "is_limited": self.is_limited,
            "retry_after_ms": self.retry_after_ms,
            "recommended_wait_ms": int(self.recommended_wait_ms),
            "data_source": self.data_source,
            "owner_id": self.owner_id,
            "last_updated": self.last_updated,
        }


@dataclass
class RateLimiter:
    """Sliding-window limiter backed by a shared RateLimitStore."""

    store: RateLimitStore = field(default_factory=MemoryRateLimitStore)
    config: RateLimitConfig = field(default_factory=RateLimitConfig)
    clock: Callable[[], float] = now_ms

    def _load(self, now: float) -> RateLimitState:
        """Latest shared state pruned to the trailing window (empty if absent)."""
        state = self.store.read() or RateLimitState()
        return state.pruned(now, self.config.window_ms)

    def admit(self) -> float:
        """Return how long (ms) the caller must wait before calling upstream.

        Never negative. Zero exactly when the window holds fewer than
        `max_requests` events and at least `min_interval_ms` has passed since
        the last recorded request.
        """
        now = self.clock()
        state = self._load(now)

        if len(state.window_events) >= self.config.max_requests:
            oldest = state.window_events[-self.config.max_requests]
            wait = oldest + self.config.window_ms - now + self.config.safety_margin_ms
            wait = max(wait, float(self.config.safety_margin_ms))
            logger.info(
                "Rate limiting: %d requests in window, waiting %.0fms",
                len(state.window_events),
                wait,
            )
            return wait

        since_last = now - state.last_request_time
        if since_last < self.config.min_interval_ms:
            wait = self.config.min_interval_ms - since_last
            logger.info("Rate limiting: spacing requests, waiting %.0fms", wait)
            return wait

        return 0.0

    def record_attempt(self) -> RateLimitState:
        """Append the current time to the window and persist it.

        Call immediately before the upstream network call.
        """
        now = self.clock()

        def _append(current: RateLimitState | None) -> RateLimitState:
            state = (current or RateLimitState()).pruned(now, self.config.window_ms)
            return replace(
                state,
                window_events=(*state.window_events, now),
                last_request_time=now,
            )

        return self.store.update(_append)

    def mark_limited(self, retry_after_ms: int | None) -> None:
        """Record that the upstream answered 429."""

        def _limit(current: RateLimitState | None) -> RateLimitState:
            state = (current or RateLimitState()).pruned(self.clock(), self.config.window_ms)
            return replace(state, limited=True, retry_after_ms=retry_after_ms)

        logger.warning("Upstream rate limited us, retry after %sms", retry_after_ms)
        self.store.update(_limit)

    def clear_limited(self) -> None:
        """Reset the limited flag after a successful upstream call."""
        current = self.store.read()
        if current is None or not current.limited:
            return
        self.store.write(replace(current, limited=False, retry_after_ms=None))

    def status(self) -> RateLimitStatus:
        """Current view of the shared state, for monitoring."""
        now = self.clock()
        stored = self.store.read()

        if stored is None:
            return RateLimitStatus(
                requests_in_window=0,
                max_requests=self.config.max_requests,
                time_until_window_reset_ms=0.0,
                is_limited=False,
                recommended_wait_ms=0.0,
                data_source="default",
            )

        state = stored.pruned(now, self.config.window_ms)
        reset = 0.0
        if state.window_events:
            reset = max(0.0, state.window_events[0] + self.config.window_ms - now)

        return RateLimitStatus(
            requests_in_window=len(state.window_events),
            max_requests=self.config.max_requests,
            time_until_window_reset_ms=reset,
            is_limited=state.limited,
            recommended_wait_ms=self.admit(),
            data_source="shared",
            owner_id=state.owner_id or None,
            last_updated=state.updated_at or None,
            retry_after_ms=state.retry_after_ms,
        )

    def recommendations(self, status: RateLimitStatus | None = None) -> list[str]:
        """Plain-language usage hints derived from a status snapshot."""
        status = status or self.status()
        hints: list[str] = []

        if status.data_source == "default":
            hints.append("No recent gateway activity recorded. Make API calls to see live data.")
        if status.utilization_pct > 80:
            hints.append("High utilization. Consider queueing or batching requests.")
        if status.recommended_wait_ms > 0:
            hints.append(f"Wait {math.ceil(status.recommended_wait_ms / 1000)}s before the next request.")
        if status.is_limited:
            hints.append("Upstream is rate limiting. Back off until the window resets.")
        if status.data_source == "shared" and status.utilization_pct < 50:
            hints.append("Utilization is comfortable.")
        return hints

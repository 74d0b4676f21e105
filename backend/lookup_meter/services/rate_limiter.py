"""
In-memory sliding-window rate limiter for anonymous callers.

At most `limit` admitted requests per identity within any trailing window
of `window_seconds`. Identities are network addresses resolved by the
HTTP layer.

Design decisions:
  • Check BEFORE record — a denied request does not occupy a slot, so a
    client hammering a closed window cannot extend its own lockout.
  • Per-identity deque of admission timestamps; pruning the left end on
    every call keeps each deque at most `limit` long.
  • All mutations happen under one threading.Lock. The critical section is
    a few deque operations, and a single lock means two concurrent admits
    for the same identity can never both take the last slot.
  • Monotonic clock by default; injectable for tests.
  • State is per process and lost on restart. A background sweeper
    (start/stop, owned by the app lifespan) reclaims idle identities.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateDecision:
    """Outcome of one admission check."""

    allowed: bool
    count: int
    remaining: int
    retry_after_seconds: int


class SlidingWindowRateLimiter:
    """Thread-safe sliding-window limiter keyed by caller identity."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task | None = None

    # ── Internals (call with the lock held) ─────────────────
    def _prune(self, identity: str, now: float) -> deque[float] | None:
        hits = self._hits.get(identity)
        if hits is None:
            return None
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if not hits:
            del self._hits[identity]
            return None
        return hits

    def _retry_after(self, hits: deque[float], now: float) -> int:
        return max(1, math.ceil(hits[0] + self.window_seconds - now))

    # ── Public API ──────────────────────────────────────────
    def admit(self, identity: str) -> RateDecision:
        """Count one request for `identity` if the window has room."""
        with self._lock:
            now = self._clock()
            hits = self._prune(identity, now)
            used = len(hits) if hits is not None else 0

            if used >= self.limit:
                decision = RateDecision(
                    allowed=False,
                    count=used,
                    remaining=0,
                    retry_after_seconds=self._retry_after(hits, now),
                )
            else:
                if hits is None:
                    hits = self._hits[identity] = deque()
                hits.append(now)
                decision = RateDecision(
                    allowed=True,
                    count=used + 1,
                    remaining=self.limit - used - 1,
                    retry_after_seconds=0,
                )

        if not decision.allowed:
            logger.info(
                "Rate limit hit for %s (%d/%d), retry in %ds",
                identity, decision.count, self.limit, decision.retry_after_seconds,
            )
        return decision

    def status(self, identity: str) -> RateDecision:
        """Current window for `identity` without counting a request."""
        with self._lock:
            now = self._clock()
            hits = self._prune(identity, now)
            used = len(hits) if hits is not None else 0
            exhausted = used >= self.limit
            return RateDecision(
                allowed=not exhausted,
                count=used,
                remaining=max(0, self.limit - used),
                retry_after_seconds=self._retry_after(hits, now) if exhausted else 0,
            )

    def reset(self, identity: str) -> bool:
        """Forget an identity's history. Returns True if it had any."""
        with self._lock:
            existed = self._hits.pop(identity, None) is not None
        if existed:
            logger.info("Rate limit reset for %s", identity)
        return existed

    def sweep(self) -> int:
        """Drop identities with no requests inside the window."""
        with self._lock:
            now = self._clock()
            before = len(self._hits)
            for identity in list(self._hits):
                self._prune(identity, now)
            removed = before - len(self._hits)
        if removed:
            logger.debug("Rate limiter swept %d idle identities", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    # ── Background sweeper ──────────────────────────────────
    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def start(self, interval_seconds: float) -> None:
        """Launch the periodic sweeper on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(interval_seconds),
            name="rate-limiter-sweeper",
        )
        logger.info("Rate limiter sweeper started (every %.0fs)", interval_seconds)

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Rate limiter sweeper stopped")

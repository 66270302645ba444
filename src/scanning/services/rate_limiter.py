"""
Request Rate Limiter
====================
Sliding-window admission control with a minimum spacing between requests.

Admissions are counted at the moment they are granted (admission-time
accounting): a call that has been admitted but has not returned yet already
occupies a slot in the window. ``try_acquire`` checks and reserves under one
lock so concurrent workers cannot both observe the same free slot.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

from ..clock import Clock, MonotonicClock
from ..config import RateLimitConfig

logger = logging.getLogger(__name__)

MIN_RECHECK_INTERVAL = 0.05


@dataclass(frozen=True)
class RateLimitStatus:
    """Point-in-time limiter state for display."""
    current_requests: int
    max_requests: int
    window_seconds: float
    wait_time: float
    can_make_request: bool


class RateLimiter:
    """
    Sliding-window rate limiter.

    Features:
    - At most ``request_limit`` admissions in any trailing ``request_window``
    - At least ``min_request_spacing`` seconds between consecutive admissions
    - Atomic check-and-reserve for concurrent callers
    - Externally imposed cool-down when the remote service signals a rate limit
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or RateLimitConfig()
        self.clock = clock or MonotonicClock()

        self._timestamps: deque[float] = deque()
        self._last_admission: Optional[float] = None
        self._blocked_until: float = 0.0
        # Re-entrant so callers can group a reservation with their own bookkeeping
        self.lock = threading.RLock()

    @property
    def limit(self) -> int:
        return self.config.request_limit

    @property
    def window(self) -> float:
        return self.config.request_window

    @property
    def min_spacing(self) -> float:
        return self.config.min_request_spacing

    def admit(self) -> bool:
        """Return True if a call may be issued right now. Does not reserve."""
        with self.lock:
            return self._is_admissible(self.clock.now())

    def record(self) -> None:
        """Mark one admission as consumed."""
        with self.lock:
            self._record(self.clock.now())

    def try_acquire(self) -> bool:
        """Atomically check availability and reserve a slot."""
        with self.lock:
            now = self.clock.now()
            if not self._is_admissible(now):
                return False
            self._record(now)
            return True

    async def acquire(self) -> None:
        """Wait until a slot is available and reserve it."""
        while not self.try_acquire():
            wait = self.wait_time()
            logger.debug(f"Rate limit reached, waiting {wait:.1f}s for a slot")
            await self.clock.sleep(max(wait, MIN_RECHECK_INTERVAL))

    def wait_time(self) -> float:
        """Seconds until the next call would be admitted (0 if admissible now)."""
        with self.lock:
            now = self.clock.now()
            self._prune(now)
            waits = [0.0, self._blocked_until - now]

            if self._last_admission is not None:
                waits.append(self.min_spacing - (now - self._last_admission))

            if len(self._timestamps) >= self.limit:
                oldest = self._timestamps[0]
                waits.append(self.window - (now - oldest) + self.config.safety_buffer)

            return max(waits)

    def defer(self, seconds: float) -> None:
        """Refuse admissions for ``seconds``; used when the remote service reports 429."""
        with self.lock:
            until = self.clock.now() + seconds
            if until > self._blocked_until:
                self._blocked_until = until
                logger.info(f"Admissions suspended for {seconds:.0f}s after remote rate limit")

    def current_count(self) -> int:
        with self.lock:
            self._prune(self.clock.now())
            return len(self._timestamps)

    def status(self) -> RateLimitStatus:
        with self.lock:
            return RateLimitStatus(
                current_requests=self.current_count(),
                max_requests=self.limit,
                window_seconds=self.window,
                wait_time=self.wait_time(),
                can_make_request=self.admit(),
            )

    def reset(self) -> None:
        with self.lock:
            self._timestamps.clear()
            self._last_admission = None
            self._blocked_until = 0.0

    def _is_admissible(self, now: float) -> bool:
        self._prune(now)
        if now < self._blocked_until:
            return False
        if len(self._timestamps) >= self.limit:
            return False
        if self._last_admission is not None and now - self._last_admission < self.min_spacing:
            return False
        return True

    def _record(self, now: float) -> None:
        self._timestamps.append(now)
        self._last_admission = now

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()

"""Sliding-window rate limiter shared by outbound API clients."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

logger = logging.getLogger(__name__)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Parse a Retry-After header into seconds to wait.

    The header is either delay-seconds or an HTTP date. Returns None when
    absent or unparseable; never negative.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max(0.0, (when - now).total_seconds())


class RateLimiter:
    """
    Allow at most ``max_requests`` per rolling ``window_seconds``.

    One instance is shared by every caller of a given provider. ``acquire``
    suspends until a slot is free; ``defer`` pushes the next slot out when
    the server asks us to back off.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._stamps: deque[float] = deque()
        self._blocked_until: float | None = None
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window_seconds:
            self._stamps.popleft()

    def _wait_time(self, now: float) -> float:
        if self._blocked_until is not None:
            if now < self._blocked_until:
                return self._blocked_until - now
            self._blocked_until = None
        self._prune(now)
        if len(self._stamps) < self.max_requests:
            return 0.0
        return self._stamps[0] + self.window_seconds - now

    async def acquire(self) -> None:
        """Wait for a free slot and record the request."""
        async with self._lock:
            while True:
                now = self._clock()
                wait = self._wait_time(now)
                if wait <= 0:
                    self._stamps.append(now)
                    return
                logger.debug(f"Rate limiter {self.name}: waiting {wait:.2f}s")
                await self._sleep(wait)

    def defer(self, seconds: float) -> None:
        """Block all callers for ``seconds`` from now (server-requested backoff)."""
        until = self._clock() + max(0.0, seconds)
        if self._blocked_until is None or until > self._blocked_until:
            self._blocked_until = until
        logger.warning(f"Rate limiter {self.name}: deferring {seconds:.1f}s")

    def status(self) -> dict[str, Any]:
        now = self._clock()
        self._prune(now)
        remaining_block = (
            max(0.0, self._blocked_until - now) if self._blocked_until is not None else 0.0
        )
        return {
            "name": self.name,
            "requests_in_window": len(self._stamps),
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "blocked_for_seconds": remaining_block,
        }

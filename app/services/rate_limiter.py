import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict

from logger_config import setup_logger

logger = setup_logger()


@dataclass
class RateLimitWindow:
    count: int
    window_start: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float  # seconds until the current window resets

    def headers(self) -> Dict[str, str]:
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(math.ceil(self.reset_after))
        return headers


class RateLimiter:
    """Per-identity request counter whose window restarts once it has elapsed.

    The first request of an identity opens a window; every request in it
    increments the count and the request that pushes the count past
    ``max_requests`` is rejected.
    """

    def __init__(self, name: str, max_requests: int, window_ms: int,
                 clock: Callable[[], float] = time.monotonic):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_ms / 1000
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = asyncio.Lock()

    async def check(self, identity: str) -> RateLimitDecision:
        """Count a request for ``identity`` and decide whether it may proceed."""
        async with self._lock:
            now = self._clock()
            window = self._windows.get(identity)
            if window is None or now - window.window_start > self.window_seconds:
                window = RateLimitWindow(count=0, window_start=now)
                self._windows[identity] = window

            window.count += 1
            allowed = window.count <= self.max_requests
            reset_after = max(0.0, window.window_start + self.window_seconds - now)
            decision = RateLimitDecision(
                allowed=allowed,
                limit=self.max_requests,
                remaining=max(0, self.max_requests - window.count),
                reset_after=reset_after,
            )

        if not allowed:
            logger.warning(f"Rate limit '{self.name}' exceeded for {identity}")
        return decision

    async def transfer(self, from_identity: str, to_identity: str) -> RateLimitDecision:
        """Move a request already counted for ``from_identity`` onto ``to_identity``."""
        async with self._lock:
            window = self._windows.get(from_identity)
            if window is not None and window.count > 0:
                window.count -= 1
        return await self.check(to_identity)

    async def allow(self, identity: str) -> bool:
        decision = await self.check(identity)
        return decision.allowed

    async def remaining(self, identity: str) -> int:
        async with self._lock:
            window = self._windows.get(identity)
            if window is None or self._clock() - window.window_start > self.window_seconds:
                return self.max_requests
            return max(0, self.max_requests - window.count)

    async def purge_stale(self) -> int:
        """Drop windows that have already elapsed. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            stale = [
                identity for identity, window in self._windows.items()
                if now - window.window_start > self.window_seconds
            ]
            for identity in stale:
                del self._windows[identity]

        if stale:
            logger.debug(f"Purged {len(stale)} stale rate limit windows from '{self.name}'")
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)

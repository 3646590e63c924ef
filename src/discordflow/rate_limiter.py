"""Per-route and global rate limiting for REST calls.

Discord limits each route (method + path with major parameters) separately
and reports the budget in X-RateLimit-* response headers. On top of that
there is a global requests-per-second ceiling, enforced here with
aiolimiter.AsyncLimiter.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from aiolimiter import AsyncLimiter

from .errors import DiscordRateLimitError

logger = logging.getLogger("discordflow.rate_limiter")

# Path segments whose following id keeps its own bucket
MAJOR_PARAMETERS = ("channels", "guilds", "webhooks")


def route_key(method: str, path: str) -> str:
    """Bucket key for a request, e.g. "GET /channels/123/messages/:id"."""
    parts = path.split("?")[0].strip("/").split("/")
    keyed = []
    for i, part in enumerate(parts):
        if part.isdigit() and not (i > 0 and parts[i - 1] in MAJOR_PARAMETERS):
            keyed.append(":id")
        else:
            keyed.append(part)
    return f"{method.upper()} /" + "/".join(keyed)


@dataclass
class RouteBucket:
    """Budget for one route. None limit/remaining means not yet known."""
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: float = 0.0  # clock() deadline
    bucket: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class RateLimiter:
    """Route token buckets plus a global token bucket.

    acquire() either waits for capacity or, with wait=False, raises
    DiscordRateLimitError instead of sleeping.
    """

    def __init__(
        self,
        global_rate: float = 50.0,
        global_period: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            global_rate: Requests allowed per global_period across all routes.
            global_period: Seconds in the global window.
            clock: Monotonic time source (injectable for tests).
        """
        self._global = AsyncLimiter(max_rate=global_rate, time_period=global_period)
        self._clock = clock
        self._buckets: Dict[str, RouteBucket] = {}
        self._global_reset_at = 0.0
        logger.info(f"Rate limiter: {global_rate} req per {global_period}s global")

    def bucket(self, route: str) -> RouteBucket:
        if route not in self._buckets:
            self._buckets[route] = RouteBucket()
        return self._buckets[route]

    async def acquire(self, route: str, wait: bool = True) -> None:
        """Take one token from the route bucket and the global budget."""
        bucket = self.bucket(route)
        async with bucket.lock:
            await self._wait_global(route, wait)

            now = self._clock()
            if bucket.remaining is not None and bucket.remaining <= 0:
                if now < bucket.reset_at:
                    delay = bucket.reset_at - now
                    if not wait:
                        raise DiscordRateLimitError(
                            f"Route {route} exhausted, resets in {delay:.2f}s",
                            retry_after=delay,
                        )
                    logger.debug(f"Route {route} exhausted, sleeping {delay:.2f}s")
                    await asyncio.sleep(delay)
                bucket.remaining = bucket.limit

            if not wait and not self._global.has_capacity():
                raise DiscordRateLimitError("Global rate limit reached", retry_after=0.0)

            if bucket.remaining is not None:
                bucket.remaining -= 1

        await self._global.acquire()

    def update(self, route: str, headers: Mapping[str, str]) -> None:
        """Record the budget reported by a response's X-RateLimit-* headers."""
        h = {k.lower(): v for k, v in headers.items()}
        remaining = h.get("x-ratelimit-remaining")
        if remaining is None:
            return

        bucket = self.bucket(route)
        try:
            if h.get("x-ratelimit-limit"):
                bucket.limit = int(h["x-ratelimit-limit"])
            bucket.remaining = int(remaining)
            if h.get("x-ratelimit-reset-after"):
                bucket.reset_at = self._clock() + float(h["x-ratelimit-reset-after"])
        except ValueError:
            logger.warning(f"Ignoring malformed rate limit headers for {route}: {h}")
            return
        bucket.bucket = h.get("x-ratelimit-bucket") or bucket.bucket

    def backoff(self, route: str, retry_after: float, is_global: bool = False) -> None:
        """Apply a 429 response: block the route (or everything) for retry_after."""
        deadline = self._clock() + retry_after
        if is_global:
            self._global_reset_at = max(self._global_reset_at, deadline)
            logger.warning(f"Global rate limit hit, pausing {retry_after:.2f}s")
        else:
            bucket = self.bucket(route)
            bucket.remaining = 0
            bucket.reset_at = max(bucket.reset_at, deadline)
            logger.warning(f"Rate limited on {route}, retry after {retry_after:.2f}s")

    async def _wait_global(self, route: str, wait: bool) -> None:
        now = self._clock()
        while now < self._global_reset_at:
            delay = self._global_reset_at - now
            if not wait:
                raise DiscordRateLimitError(
                    f"Global rate limit active ({route}), resets in {delay:.2f}s",
                    retry_after=delay,
                )
            await asyncio.sleep(delay)
            now = self._clock()

"""
Per-wallet sliding-window rate limiting.

RateLimiter keeps the window in process memory and is rebuilt on restart;
RedisRateLimiter keeps it in a shared sorted set so several API instances
see the same window.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import redis.asyncio as redis

from app.core.config import Settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    In-memory sliding window: at most ``max_requests`` per ``window`` per wallet.

    The check-and-append in ``allow`` never awaits, so it runs atomically on
    the event loop without a lock. Wallets whose window has emptied are swept
    at most once per window so idle wallets do not accumulate.
    """

    def __init__(self, window_seconds: int = 15 * 60, max_requests: int = 5):
        self.window = timedelta(seconds=window_seconds)
        self.max_requests = max_requests
        self._windows: Dict[str, List[datetime]] = {}
        self._last_sweep: Optional[datetime] = None

    def _live(self, wallet_address: str, now: datetime) -> List[datetime]:
        requests = [t for t in self._windows.get(wallet_address, []) if now - t < self.window]
        if requests:
            self._windows[wallet_address] = requests
        else:
            self._windows.pop(wallet_address, None)
        return requests

    def _sweep(self, now: datetime) -> None:
        if self._last_sweep is not None and now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        expired = [w for w, requests in self._windows.items() if now - requests[-1] >= self.window]
        for wallet_address in expired:
            del self._windows[wallet_address]
        if expired:
            logger.debug(f"Rate limiter dropped {len(expired)} idle wallets")

    async def allow(self, wallet_address: str, now: datetime) -> bool:
        self._sweep(now)
        requests = self._live(wallet_address, now)
        if len(requests) >= self.max_requests:
            return False
        requests.append(now)
        self._windows[wallet_address] = requests
        return True

    async def retry_after(self, wallet_address: str, now: datetime) -> float:
        """Seconds until the oldest request in the window expires."""
        requests = self._live(wallet_address, now)
        if len(requests) < self.max_requests:
            return 0.0
        return max((requests[0] + self.window - now).total_seconds(), 0.0)


# KEYS[1] window key; ARGV: now_ms, window_ms, max_requests, member
SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
if redis.call('ZCARD', key) >= limit then
    return 0
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, window)
return 1
"""


class RedisRateLimiter:
    """Same windowed semantics as RateLimiter, shared through Redis."""

    KEY_PREFIX = "presale:ratelimit:"

    def __init__(
        self,
        redis_client: redis.Redis,
        window_seconds: int = 15 * 60,
        max_requests: int = 5,
    ):
        self._redis = redis_client
        self.window = timedelta(seconds=window_seconds)
        self.max_requests = max_requests
        self._script = redis_client.register_script(SLIDING_WINDOW_LUA)

    @property
    def _window_ms(self) -> int:
        return int(self.window.total_seconds() * 1000)

    def _key(self, wallet_address: str) -> str:
        return f"{self.KEY_PREFIX}{wallet_address}"

    async def allow(self, wallet_address: str, now: datetime) -> bool:
        now_ms = int(now.timestamp() * 1000)
        result = await self._script(
            keys=[self._key(wallet_address)],
            args=[now_ms, self._window_ms, self.max_requests, f"{now_ms}-{uuid.uuid4().hex}"],
        )
        return int(result) == 1

    async def retry_after(self, wallet_address: str, now: datetime) -> float:
        """Seconds until the oldest live request expires, 0 while the window has room."""
        now_ms = int(now.timestamp() * 1000)
        key = self._key(wallet_address)
        # Same exclusive lower bound the window script trims with
        live_min = f"({now_ms - self._window_ms}"
        if await self._redis.zcount(key, live_min, "+inf") < self.max_requests:
            return 0.0
        oldest = await self._redis.zrangebyscore(key, live_min, "+inf", start=0, num=1, withscores=True)
        if not oldest:
            return 0.0
        _, score = oldest[0]
        return max((score + self._window_ms - now_ms) / 1000, 0.0)


def build_rate_limiter(settings: Settings):
    """Pick the rate limiter backend configured in settings."""
    if settings.rate_limit_backend == "redis":
        logger.info(f"Using Redis rate limiter at {settings.redis_url}")
        return RedisRateLimiter(
            redis.from_url(settings.redis_url),
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
        )
    return RateLimiter(
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.rate_limit_max_requests,
    )

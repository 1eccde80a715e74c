import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from utils.logger import get_logger

logger = get_logger("rate_limiter")


@dataclass
class RateLimitConfig:
    """Rate limit configuration for an API endpoint"""

    requests_per_window: int
    window_seconds: float = 1.0
    burst_limit: Optional[int] = None  # Max burst if different from rate


@dataclass
class TokenBucket:
    """Token bucket for rate limiting"""

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float = field(default_factory=time.monotonic)

    def refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: int = 1) -> bool:
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: int = 1) -> float:
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


def _default_limits() -> Dict[str, RateLimitConfig]:
    from config import settings

    quote_rate = max(1, int(round(settings.JUPITER_QUOTE_RATE_PER_SECOND * 10)))
    swap_rate = max(1, int(round(settings.JUPITER_SWAP_RATE_PER_SECOND * 10)))
    zerox_rate = max(1, int(round(settings.ZEROX_RATE_PER_SECOND * 10)))
    return {
        "jupiter_quote": RateLimitConfig(requests_per_window=quote_rate, window_seconds=10),
        "jupiter_swap": RateLimitConfig(requests_per_window=swap_rate, window_seconds=10),
        "solana_rpc": RateLimitConfig(requests_per_window=100, window_seconds=10),
        "zerox": RateLimitConfig(requests_per_window=zerox_rate, window_seconds=10),
        "evm_rpc": RateLimitConfig(requests_per_window=100, window_seconds=10),
    }


class RateLimiter:
    """Per-endpoint token buckets shared by every outbound HTTP caller."""

    def __init__(self, limits: Optional[Dict[str, RateLimitConfig]] = None):
        self._limits = limits
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def limits(self) -> Dict[str, RateLimitConfig]:
        if self._limits is None:
            self._limits = _default_limits()
        return self._limits

    def _get_bucket(self, endpoint: str) -> TokenBucket:
        if endpoint not in self._buckets:
            config = self.limits.get(endpoint, RateLimitConfig(100, 10))
            capacity = config.burst_limit or config.requests_per_window
            refill_rate = config.requests_per_window / config.window_seconds
            self._buckets[endpoint] = TokenBucket(capacity=capacity, tokens=capacity, refill_rate=refill_rate)
        return self._buckets[endpoint]

    def _get_lock(self, endpoint: str) -> asyncio.Lock:
        if endpoint not in self._locks:
            self._locks[endpoint] = asyncio.Lock()
        return self._locks[endpoint]

    async def acquire(self, endpoint: str, tokens: int = 1) -> float:
        """
        Acquire rate limit permission. Returns wait time (0 if immediate).
        Blocks until permission is granted.
        """
        async with self._get_lock(endpoint):
            bucket = self._get_bucket(endpoint)
            wait_time = bucket.wait_time(tokens)
            if wait_time > 0:
                logger.debug("Rate limit wait", endpoint=endpoint, wait_seconds=wait_time)
                await asyncio.sleep(wait_time)
                bucket.refill()
            bucket.consume(tokens)
            return wait_time

    def get_status(self) -> Dict[str, dict]:
        status = {}
        for endpoint, bucket in self._buckets.items():
            bucket.refill()
            status[endpoint] = {
                "available_tokens": bucket.tokens,
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
            }
        return status


# Global rate limiter instance
rate_limiter = RateLimiter()


def endpoint_for_url(url: str) -> str:
    """Map an outbound URL to its rate-limit bucket."""
    if "/swap/allowance-holder/" in url or "0x.org" in url:
        return "zerox"
    if "/swap-instructions" in url or url.endswith("/swap"):
        return "jupiter_swap"
    if "/quote" in url:
        return "jupiter_quote"
    return "solana_rpc"

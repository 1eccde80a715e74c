import asyncio
import random
from typing import Optional, Tuple, Type

import httpx

from utils.logger import get_logger

logger = get_logger("retry")


class RetryConfig:
    """Bounded retry policy for transient transport failures."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        from config import settings

        return cls(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and optional jitter"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """Transport errors and throttling/server statuses retry; everything else is final."""
    if isinstance(error, config.retryable_exceptions):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return False


class RetryableClient:
    """HTTP client wrapper with automatic retry.

    ``passthrough_statuses`` are returned to the caller instead of raised,
    so that meaningful 4xx answers (e.g. "no route") are not treated as
    transport failures.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: Optional[RetryConfig] = None,
        passthrough_statuses: Tuple[int, ...] = (),
    ):
        self.client = client
        self.config = config or RetryConfig.from_settings()
        self.passthrough_statuses = passthrough_statuses

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        last_error: Optional[Exception] = None

        for attempt in range(self.config.max_attempts):
            try:
                response = await self.client.request(method, url, **kwargs)
                if response.status_code in self.passthrough_statuses:
                    return response
                response.raise_for_status()
                return response
            except Exception as e:
                last_error = e
                if not is_retryable_error(e, self.config):
                    raise

                if attempt < self.config.max_attempts - 1:
                    delay = calculate_delay(attempt, self.config)
                    if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
                        retry_after = e.response.headers.get("Retry-After")
                        if retry_after:
                            try:
                                delay = max(delay, float(retry_after))
                            except ValueError:
                                pass
                    logger.warning(
                        "Retrying HTTP request",
                        method=method,
                        url=url,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        raise last_error

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

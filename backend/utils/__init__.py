from .logger import setup_logging, get_logger, scanner_logger, execution_logger, wallet_logger
from .retry import RetryConfig, RetryableClient
from .rate_limiter import RateLimiter, rate_limiter, endpoint_for_url

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "scanner_logger",
    "execution_logger",
    "wallet_logger",

    # Retry
    "RetryConfig",
    "RetryableClient",

    # Rate Limiter
    "RateLimiter",
    "rate_limiter",
    "endpoint_for_url",
]

from .logger import setup_logging, get_logger, poller_logger, arbitrage_logger, copytrade_logger
from .retry import RetryConfig, RetryableClient

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "poller_logger",
    "arbitrage_logger",
    "copytrade_logger",

    # Retry
    "RetryConfig",
    "RetryableClient",
]

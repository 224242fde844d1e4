import asyncio
import random
from typing import Optional, Type, Tuple
import httpx

from utils.logger import get_logger

logger = get_logger("retry")

# Provider replies that are worth another attempt
TRANSIENT_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504)
TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
    asyncio.TimeoutError,
)


class RetryConfig:
    """Backoff policy shared by the Polymarket and Kalshi clients"""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        from config import settings

        return cls(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts - 1:
            return False
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in TRANSIENT_STATUS_CODES
        return isinstance(error, TRANSIENT_EXCEPTIONS)

    def backoff_delay(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Exponential delay for ``attempt`` (0-based), never shorter than a 429's Retry-After."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        retry_after = _retry_after_seconds(error)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


def is_rate_limited(error: Optional[Exception]) -> bool:
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429


def _retry_after_seconds(error: Optional[Exception]) -> Optional[float]:
    if not is_rate_limited(error):
        return None
    raw = error.response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class RetryableClient:
    """httpx client wrapper that retries transient failures.

    Non-2xx responses are raised as ``httpx.HTTPStatusError`` so callers see
    one exception family whether the request failed on the wire or on status.
    """

    def __init__(self, client: httpx.AsyncClient, config: RetryConfig = None):
        self.client = client
        self.config = config or RetryConfig()

    @property
    def is_closed(self) -> bool:
        return self.client.is_closed

    async def aclose(self):
        await self.client.aclose()

    async def get(self, url: str, **kwargs) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self.client.get(url, **kwargs)
                response.raise_for_status()
                return response
            except Exception as e:
                if not self.config.should_retry(e, attempt):
                    raise
                delay = self.config.backoff_delay(attempt, e)
                logger.warning(
                    "Retrying HTTP request",
                    url=url,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    error=str(e),
                )
                await asyncio.sleep(delay)
                attempt += 1

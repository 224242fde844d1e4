import httpx
import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

from config import settings
from models import KalshiMarket
from utils.logger import get_logger
from utils.retry import RetryConfig, is_rate_limited
from utils.utcnow import utcnow

logger = get_logger("kalshi")

KALSHI_PAGE_LIMIT = 1000


@dataclass
class KalshiPage:
    markets: list[KalshiMarket] = field(default_factory=list)
    cursor: Optional[str] = None
    raw_count: int = 0  # rows Kalshi sent, before parsing


class KalshiClient:
    """Read-only client for Kalshi's public market catalog.

    Public endpoint used:
        GET /trade-api/v2/markets?status=open&cursor=...

    Reads go through a token bucket (10 req/s sustained, burst 20) which sits
    below Kalshi's Basic-tier ceiling of 20 reads/s.
    """

    def __init__(self):
        self.base_url: str = settings.KALSHI_API_URL
        self._client: Optional[httpx.AsyncClient] = None
        self._retry = RetryConfig.from_settings()

        self._read_rate: float = 10.0  # sustained reads per second
        self._read_bucket: float = 20.0
        self._read_capacity: float = 20.0
        self._read_last_refill: float = time.monotonic()
        self._read_lock: asyncio.Lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    #  HTTP helpers
    # ------------------------------------------------------------------ #

    async def _get_client(self) -> httpx.AsyncClient:
        """Return a long-lived async HTTP client, creating one if needed."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=float(settings.API_TIMEOUT_SECONDS),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self):
        """Shut down the HTTP client cleanly."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _rate_limit_wait(self):
        """Block until a read token is available."""
        async with self._read_lock:
            now = time.monotonic()
            elapsed = now - self._read_last_refill
            self._read_bucket = min(self._read_capacity, self._read_bucket + elapsed * self._read_rate)
            self._read_last_refill = now

            if self._read_bucket < 1.0:
                wait = (1.0 - self._read_bucket) / self._read_rate
                logger.debug("Kalshi rate-limit wait", wait_seconds=wait)
                await asyncio.sleep(wait)
                self._read_bucket = 0.0
                self._read_last_refill = time.monotonic()
            else:
                self._read_bucket -= 1.0

    def _drain_read_bucket(self):
        """Drain the read bucket after a 429 to prevent burst retries."""
        self._read_bucket = 0.0
        self._read_last_refill = time.monotonic()

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        """Rate-limited GET with backoff on 429/5xx/transport errors."""
        attempt = 0
        while True:
            await self._rate_limit_wait()
            client = await self._get_client()
            try:
                response = await client.get(f"{self.base_url}{path}", params=params)
                response.raise_for_status()
                return response.json()
            except Exception as exc:
                if not self._retry.should_retry(exc, attempt):
                    raise
                if is_rate_limited(exc):
                    # Other concurrent readers pause too
                    self._drain_read_bucket()
                backoff = self._retry.backoff_delay(attempt, exc)
                logger.warning(
                    "Kalshi request failed, retrying",
                    path=path,
                    attempt=attempt + 1,
                    backoff_seconds=round(backoff, 2),
                    error=str(exc),
                )
                await asyncio.sleep(backoff)
                attempt += 1

    # ------------------------------------------------------------------ #
    #  Public API: markets
    # ------------------------------------------------------------------ #

    async def fetch_page(
        self,
        cursor: Optional[str] = None,
        limit: int = KALSHI_PAGE_LIMIT,
        min_close_ts: Optional[int] = None,
    ) -> KalshiPage:
        """Fetch one page of open markets.

        ``cursor`` on the result is None when Kalshi sends no cursor (an empty
        string also means no more pages). ``raw_count`` counts every row on
        the page, including ones that failed to parse.
        """
        params: dict = {"limit": min(limit, KALSHI_PAGE_LIMIT), "status": "open"}
        if cursor:
            params["cursor"] = cursor
        if min_close_ts is not None:
            params["min_close_ts"] = int(min_close_ts)

        data = await self._get("/markets", params=params)
        rows = data.get("markets") or []

        page = KalshiPage(cursor=data.get("cursor") or None, raw_count=len(rows))
        for raw in rows:
            try:
                market = KalshiMarket.from_api_response(raw)
            except (ValueError, TypeError) as exc:
                logger.debug("Failed to parse Kalshi market", error=str(exc))
                continue
            if market.ticker and market.title:
                page.markets.append(market)

        if len(page.markets) < page.raw_count:
            logger.debug("Dropped unparseable Kalshi markets", dropped=page.raw_count - len(page.markets))
        return page

    async def fetch_open_markets(
        self,
        cursor: Optional[str] = None,
        limit: int = KALSHI_PAGE_LIMIT,
        min_close_ts: Optional[int] = None,
    ) -> tuple[list[KalshiMarket], Optional[str]]:
        """Returns (markets, next_cursor) for one page."""
        page = await self.fetch_page(cursor=cursor, limit=limit, min_close_ts=min_close_ts)
        return page.markets, page.cursor

    async def get_all_open_markets(self, max_pages: Optional[int] = None) -> list[KalshiMarket]:
        """Fetch every open market with cursor pagination.

        Stops on an empty page, a missing cursor, a cursor we've already seen,
        the page cap, or too many consecutive failures (returning what was
        collected so far).
        """
        max_pages = max_pages or settings.ARB_MAX_CATALOG_PAGES
        min_close_ts = int(time.time())

        all_markets: list[KalshiMarket] = []
        seen_cursors: set[str] = set()
        cursor: Optional[str] = None
        pages = 0
        consecutive_errors = 0

        while pages < max_pages:
            try:
                page = await self.fetch_page(cursor=cursor, min_close_ts=min_close_ts)
            except (httpx.HTTPError, ValueError) as exc:
                consecutive_errors += 1
                logger.warning(
                    "Kalshi markets page failed",
                    cursor=cursor,
                    consecutive_errors=consecutive_errors,
                    error=str(exc),
                )
                if consecutive_errors >= settings.CATALOG_MAX_CONSECUTIVE_ERRORS:
                    logger.error("Aborting Kalshi catalog fetch", collected=len(all_markets))
                    break
                await asyncio.sleep(settings.CATALOG_ERROR_BACKOFF_SECONDS)
                continue

            consecutive_errors = 0
            pages += 1
            # A page whose rows all failed to parse is not the end of the catalog
            if page.raw_count == 0:
                break
            all_markets.extend(page.markets)

            next_cursor = page.cursor
            if next_cursor is None:
                break
            if next_cursor in seen_cursors:
                logger.warning("Kalshi returned a repeated cursor, stopping", pages=pages)
                break
            seen_cursors.add(next_cursor)
            cursor = next_cursor
            await asyncio.sleep(settings.CATALOG_PAGE_DELAY_SECONDS)
        else:
            logger.warning("Kalshi catalog page cap reached", pages=pages)

        logger.info(
            "Fetched Kalshi markets",
            count=len(all_markets),
            pages=pages,
            fetched_at=utcnow().isoformat(),
        )
        return all_markets


# Singleton instance
kalshi_client = KalshiClient()

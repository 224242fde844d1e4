import httpx
import asyncio
from typing import Optional
from datetime import datetime

from config import settings
from models import PolymarketMarket, RawTrade
from utils.logger import get_logger
from utils.retry import RetryConfig, RetryableClient
from utils.utcnow import utcnow

logger = get_logger("polymarket")

GAMMA_PAGE_LIMIT = 200
MAX_TRADES_PER_REQUEST = 500


class PolymarketClient:
    """Client for the Polymarket data-api (wallet trades) and Gamma API (markets)"""

    def __init__(self):
        self.gamma_url = settings.GAMMA_API_URL
        self.data_url = settings.DATA_API_URL
        self._client: Optional[RetryableClient] = None
        self.last_skipped_records = 0

    async def _get_client(self) -> RetryableClient:
        if self._client is None or self._client.is_closed:
            self._client = RetryableClient(
                httpx.AsyncClient(
                    timeout=float(settings.API_TIMEOUT_SECONDS),
                    headers={"Accept": "application/json"},
                ),
                RetryConfig.from_settings(),
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ==================== DATA API ====================

    async def get_wallet_trades(
        self,
        address: str,
        limit: int = 50,
        offset: int = 0,
        since: Optional[datetime] = None,
    ) -> list[RawTrade]:
        """Most recent taker fills for a wallet, newest first.

        Rows that fail to parse are skipped and counted in
        ``last_skipped_records``; transport errors propagate after retries.
        """
        client = await self._get_client()
        response = await client.get(
            f"{self.data_url}/trades",
            params={
                "user": address,
                "limit": max(1, min(int(limit), MAX_TRADES_PER_REQUEST)),
                "offset": max(0, int(offset)),
                "takerOnly": "true",
            },
        )
        payload = response.json()
        rows = payload if isinstance(payload, list) else []

        trades: list[RawTrade] = []
        skipped = 0
        for row in rows:
            try:
                trade = RawTrade.from_data_api(row)
            except (ValueError, TypeError, AttributeError) as exc:
                skipped += 1
                logger.debug("Skipping unparseable trade", wallet=address, error=str(exc))
                continue
            if since is not None and trade.timestamp is not None and trade.timestamp < since:
                continue
            trades.append(trade)

        self.last_skipped_records = skipped
        if skipped:
            logger.warning("Skipped unparseable trades", wallet=address, skipped=skipped)
        return trades

    # ==================== GAMMA API ====================

    async def fetch_open_markets(
        self,
        cursor: Optional[str] = None,
        limit: int = GAMMA_PAGE_LIMIT,
        min_liquidity: Optional[float] = None,
        end_date_min: Optional[datetime] = None,
    ) -> tuple[list[PolymarketMarket], Optional[str]]:
        """Fetch one page of active markets.

        ``cursor`` is the stringified offset. Returns (markets, next_cursor);
        next_cursor is None once a page comes back shorter than ``limit``.
        """
        offset = int(cursor) if cursor else 0
        params: dict = {
            "active": "true",
            "closed": "false",
            "limit": limit,
            "offset": offset,
        }
        if min_liquidity is not None:
            params["liquidity_num_min"] = min_liquidity
        if end_date_min is not None:
            params["end_date_min"] = end_date_min.strftime("%Y-%m-%dT%H:%M:%SZ")

        client = await self._get_client()
        response = await client.get(f"{self.gamma_url}/markets", params=params)
        payload = response.json()
        rows = payload if isinstance(payload, list) else []

        markets: list[PolymarketMarket] = []
        for row in rows:
            try:
                market = PolymarketMarket.from_gamma_response(row)
            except (ValueError, TypeError) as exc:
                logger.debug("Failed to parse Gamma market", error=str(exc))
                continue
            if market.id and market.question:
                markets.append(market)

        next_cursor = str(offset + len(rows)) if len(rows) >= limit else None
        return markets, next_cursor

    async def get_all_active_markets(
        self,
        min_liquidity: Optional[float] = None,
        max_pages: Optional[int] = None,
    ) -> list[PolymarketMarket]:
        """Walk the Gamma catalog until a short/empty page.

        Gives up after ``CATALOG_MAX_CONSECUTIVE_ERRORS`` failed pages in a row
        and returns what was collected so far.
        """
        if min_liquidity is None:
            min_liquidity = settings.ARB_MIN_LIQUIDITY
        max_pages = max_pages or settings.ARB_MAX_CATALOG_PAGES
        end_date_min = utcnow()

        all_markets: list[PolymarketMarket] = []
        cursor: Optional[str] = None
        pages = 0
        consecutive_errors = 0

        while pages < max_pages:
            try:
                markets, next_cursor = await self.fetch_open_markets(
                    cursor=cursor,
                    min_liquidity=min_liquidity,
                    end_date_min=end_date_min,
                )
            except (httpx.HTTPError, ValueError) as exc:
                consecutive_errors += 1
                logger.warning(
                    "Gamma markets page failed",
                    cursor=cursor,
                    consecutive_errors=consecutive_errors,
                    error=str(exc),
                )
                if consecutive_errors >= settings.CATALOG_MAX_CONSECUTIVE_ERRORS:
                    logger.error("Aborting Gamma catalog fetch", collected=len(all_markets))
                    break
                await asyncio.sleep(settings.CATALOG_ERROR_BACKOFF_SECONDS)
                continue

            consecutive_errors = 0
            pages += 1
            all_markets.extend(markets)
            if next_cursor is None:
                break
            cursor = next_cursor
            await asyncio.sleep(settings.CATALOG_PAGE_DELAY_SECONDS)
        else:
            logger.warning("Gamma catalog page cap reached", pages=pages)

        logger.info("Fetched Polymarket markets", count=len(all_markets), pages=pages)
        return all_markets

    async def get_market_by_slug(self, slug: str, include_tag: bool = True) -> Optional[dict]:
        """Raw Gamma market for ``slug`` (with tags), or None when it does not exist."""
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.gamma_url}/markets/slug/{slug}",
                params={"include_tag": str(include_tag).lower()},
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise
        data = response.json()
        return data if isinstance(data, dict) else None


# Singleton instance
polymarket_client = PolymarketClient()

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

from config import settings

_CONDITION_ID_RE = re.compile(r"^0x[0-9a-fA-F]+$")


def _clean_segment(value: Any) -> str:
    return str(value or "").strip().strip("/")


def _is_condition_id(value: str) -> bool:
    return bool(_CONDITION_ID_RE.fullmatch(value))


def derive_kalshi_event_ticker(market_ticker: Any) -> str:
    ticker = re.sub(r"_(yes|no)$", "", _clean_segment(market_ticker), flags=re.IGNORECASE)
    if not ticker:
        return ""

    # Kalshi event tickers are the first hyphen-separated segment of the
    # market ticker (e.g. "KXBTCD" from "KXBTCD-26FEB1314").
    parts = [p for p in ticker.split("-") if p]
    if len(parts) <= 1:
        return ticker
    return parts[0]


def build_polymarket_market_url(
    *,
    market_slug: Any = None,
    event_slug: Any = None,
    market_id: Any = None,
) -> str | None:
    base = settings.POLYMARKET_SITE_URL
    market_slug_text = _clean_segment(market_slug).lower()
    event_slug_text = _clean_segment(event_slug).lower()
    market_id_text = _clean_segment(market_id)

    if market_slug_text:
        # /market/{market_slug} is stable and resolves to the canonical event path.
        return f"{base}/market/{quote(market_slug_text, safe='')}"
    if event_slug_text:
        return f"{base}/event/{quote(event_slug_text, safe='')}"
    # Condition ids 404 on the website; Gamma numeric ids resolve under /event.
    if market_id_text and not _is_condition_id(market_id_text):
        return f"{base}/event/{quote(market_id_text, safe='')}"
    return None


def build_kalshi_market_url(
    *,
    market_ticker: Any = None,
    event_ticker: Any = None,
) -> str | None:
    # Kalshi website URLs resolve via the lowercase event ticker; full market
    # tickers 404.
    event_ticker_text = _clean_segment(event_ticker) or derive_kalshi_event_ticker(market_ticker)
    if not event_ticker_text:
        return None
    return f"{settings.KALSHI_SITE_URL}/markets/{quote(event_ticker_text.lower(), safe='')}"

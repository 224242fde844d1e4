from pydantic import BaseModel, Field
from typing import Any, Optional
from datetime import datetime
from decimal import Decimal
import json

from models.types import to_decimal
from utils.utcnow import to_utc_naive


def _parse_maybe_json_list(raw: object) -> list[object]:
    """Accept list values directly or parse JSON-encoded list strings."""
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, tuple):
        return list(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return []
        if isinstance(parsed, list):
            return parsed
    return []


def _to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _tag_labels(raw: Any) -> list[str]:
    """Gamma returns tags either as strings or as ``{"label", "slug"}`` objects."""
    labels: list[str] = []
    for tag in _parse_maybe_json_list(raw):
        if isinstance(tag, dict):
            text = tag.get("label") or tag.get("slug") or ""
        else:
            text = tag
        text = str(text or "").strip()
        if text:
            labels.append(text)
    return labels


# ==================== WHALE TRADES ====================

_RAW_TRADE_KEYS = frozenset(
    {
        "side",
        "type",
        "proxyWallet",
        "asset",
        "conditionId",
        "outcome",
        "outcomeIndex",
        "size",
        "price",
        "timestamp",
        "transactionHash",
        "title",
        "slug",
        "eventSlug",
        "icon",
        "tags",
    }
)


class TradeMetadata(BaseModel):
    """Provider fields kept on an activity record for later re-classification.

    Known keys are typed; anything else the provider sends lands in ``extra``
    so schema drift never breaks ingestion.
    """

    market: Optional[str] = None
    slug: Optional[str] = None
    event_slug: Optional[str] = None
    condition_id: Optional[str] = None
    outcome_index: Optional[int] = None
    tags: list[str] = []
    icon: Optional[str] = None
    price: Optional[str] = None
    usd_value: Optional[str] = None
    extra: dict[str, Any] = {}

    def to_json(self) -> dict:
        return self.model_dump(exclude_none=True)

    @classmethod
    def from_json(cls, data: Optional[dict]) -> "TradeMetadata":
        if not data:
            return cls()
        known = set(cls.model_fields)
        payload = {k: v for k, v in data.items() if k in known}
        extra = dict(payload.get("extra") or {})
        extra.update({k: v for k, v in data.items() if k not in known})
        payload["extra"] = extra
        return cls.model_validate(payload)


class RawTrade(BaseModel):
    """A single fill as returned by the Polymarket data-api ``/trades`` endpoint."""

    side: str
    activity_type: str = "TRADE"
    wallet_address: str = ""
    asset: str = ""
    condition_id: str = ""
    outcome: Optional[str] = None
    outcome_index: Optional[int] = None
    size: Decimal
    price: Decimal
    timestamp: Optional[datetime] = None
    transaction_hash: str
    title: Optional[str] = None
    slug: Optional[str] = None
    event_slug: Optional[str] = None
    icon: Optional[str] = None
    tags: list[str] = []
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def usd_value(self) -> Decimal:
        return (self.size * self.price).quantize(Decimal("0.000001"))

    @classmethod
    def from_data_api(cls, data: dict) -> "RawTrade":
        """Parse a data-api trade row. Raises ``ValueError`` on missing/invalid fields."""
        tx_hash = str(data.get("transactionHash") or "").strip()
        if not tx_hash:
            raise ValueError("trade has no transactionHash")

        return cls(
            side=str(data.get("side") or "").strip().upper(),
            activity_type=str(data.get("type") or "TRADE").strip().upper(),
            wallet_address=str(data.get("proxyWallet") or "").strip().lower(),
            asset=str(data.get("asset") or "").strip(),
            condition_id=str(data.get("conditionId") or "").strip(),
            outcome=data.get("outcome"),
            outcome_index=_to_int(data.get("outcomeIndex")),
            size=to_decimal(data.get("size")),
            price=to_decimal(data.get("price")),
            timestamp=to_utc_naive(data.get("timestamp")),
            transaction_hash=tx_hash,
            title=data.get("title"),
            slug=data.get("slug"),
            event_slug=data.get("eventSlug"),
            icon=data.get("icon"),
            tags=_tag_labels(data.get("tags")),
            extra={k: v for k, v in data.items() if k not in _RAW_TRADE_KEYS},
        )

    def to_metadata(self) -> TradeMetadata:
        return TradeMetadata(
            market=self.title,
            slug=self.slug,
            event_slug=self.event_slug,
            condition_id=self.condition_id or None,
            outcome_index=self.outcome_index,
            tags=list(self.tags),
            icon=self.icon,
            price=str(self.price),
            usd_value=str(self.usd_value),
            extra=dict(self.extra),
        )


# ==================== MARKET CATALOGS ====================


class PolymarketMarket(BaseModel):
    """Binary Polymarket market with the buy-side prices used for arbitrage."""

    id: str
    question: str
    slug: str = ""
    condition_id: str = ""
    description: str = ""
    yes_price: Optional[float] = None
    no_price: Optional[float] = None
    liquidity: float = 0.0
    volume: Optional[float] = None
    end_date: Optional[datetime] = None
    tags: list[str] = []

    @classmethod
    def from_gamma_response(cls, data: dict) -> "PolymarketMarket":
        """Parse market from Gamma API response"""
        yes_price, no_price = cls._buy_prices(data)
        liquidity = _to_float(data.get("liquidityNum"))
        if liquidity is None:
            liquidity = _to_float(data.get("liquidity"), 0.0)

        return cls(
            id=str(data.get("id") or ""),
            question=str(data.get("question") or ""),
            slug=str(data.get("slug") or ""),
            condition_id=str(data.get("conditionId") or data.get("condition_id") or ""),
            description=str(data.get("description") or ""),
            yes_price=yes_price,
            no_price=no_price,
            liquidity=liquidity,
            volume=_to_float(data.get("volumeNum"), _to_float(data.get("volume"))),
            end_date=to_utc_naive(data.get("endDate") or data.get("end_date_iso")),
            tags=_tag_labels(data.get("tags")),
        )

    @staticmethod
    def _buy_prices(data: dict) -> tuple[Optional[float], Optional[float]]:
        # Orderbook quotes first: buying YES costs bestAsk, buying NO costs
        # roughly 1 - bestBid on a binary book.
        best_bid = _to_float(data.get("bestBid"))
        best_ask = _to_float(data.get("bestAsk"))
        if best_bid is not None and best_ask is not None:
            return best_ask, 1.0 - best_bid

        prices = [_to_float(p) for p in _parse_maybe_json_list(data.get("outcomePrices"))]
        outcomes = [str(o).strip().lower() for o in _parse_maybe_json_list(data.get("outcomes"))]
        if len(prices) < 2 or any(p is None for p in prices[:2]):
            return None, None
        if outcomes[:2] == ["no", "yes"]:
            return prices[1], prices[0]
        return prices[0], prices[1]

    @property
    def has_prices(self) -> bool:
        return self.yes_price is not None and self.no_price is not None


class KalshiMarket(BaseModel):
    """Open Kalshi market. Quotes are kept in integer cents as Kalshi sends them."""

    ticker: str
    event_ticker: str = ""
    title: str
    subtitle: str = ""
    yes_bid: int = 0
    yes_ask: int = 0
    no_bid: int = 0
    no_ask: int = 0
    liquidity: float = 0.0
    volume: Optional[float] = None
    close_time: Optional[datetime] = None
    status: str = ""

    @classmethod
    def from_api_response(cls, data: dict) -> "KalshiMarket":
        def _cents(key: str) -> int:
            cents = _to_int(data.get(key))
            if cents is not None:
                return cents
            dollars = _to_float(data.get(f"{key}_dollars"))
            return int(round(dollars * 100)) if dollars is not None else 0

        liquidity = _to_float(data.get("liquidity_dollars"))
        if liquidity is None:
            liquidity = (_to_float(data.get("liquidity"), 0.0) or 0.0) / 100.0

        return cls(
            ticker=str(data.get("ticker") or ""),
            event_ticker=str(data.get("event_ticker") or ""),
            title=str(data.get("title") or data.get("subtitle") or ""),
            subtitle=str(data.get("subtitle") or data.get("yes_sub_title") or ""),
            yes_bid=_cents("yes_bid"),
            yes_ask=_cents("yes_ask"),
            no_bid=_cents("no_bid"),
            no_ask=_cents("no_ask"),
            liquidity=liquidity,
            volume=_to_float(data.get("volume")),
            close_time=to_utc_naive(data.get("close_time") or data.get("expiration_time")),
            status=str(data.get("status") or "").lower(),
        )

    @property
    def has_prices(self) -> bool:
        return self.yes_ask > 0 and self.no_ask > 0

import asyncio
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, NamedTuple, Optional

from sqlalchemy import select, tuple_
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import KalshiMarket, PolymarketMarket
from models.database import ArbitrageDirection, ArbitrageOpportunity, AsyncSessionLocal
from services.kalshi_client import kalshi_client
from services.polymarket import polymarket_client
from utils.logger import arbitrage_logger as logger
from utils.market_urls import build_kalshi_market_url, build_polymarket_market_url
from utils.utcnow import utcnow

_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "will", "be", "is", "are", "was", "were",
        "this", "that", "these", "those", "it", "its", "if", "when", "where",
        "what", "who", "which", "how", "why", "can", "may", "might", "must",
        "should", "would", "could", "have", "has", "had", "do", "does", "did",
    }
)

_WORD_RE = re.compile(r"[a-z0-9]+")

# Columns a re-discovery must not overwrite
_PRESERVED_COLUMNS = frozenset({"id", "is_verified", "created_at"})


# ------------------------------------------------------------------ #
#  Text similarity
# ------------------------------------------------------------------ #


def normalize_words(text: Optional[str]) -> list[str]:
    return _WORD_RE.findall((text or "").lower())


def extract_keywords(text: Optional[str]) -> frozenset[str]:
    return frozenset(w for w in normalize_words(text) if len(w) > 2 and w not in _STOP_WORDS)


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def polymarket_text(market: PolymarketMarket) -> str:
    return f"{market.question} {market.description}"


def kalshi_text(market: KalshiMarket) -> str:
    return f"{market.title} {market.subtitle}"


@dataclass(frozen=True)
class _Indexed:
    keywords: frozenset[str]
    important: frozenset[str]  # normalized words longer than 4 chars
    date: Optional[datetime]


def _index(text: str, date: Optional[datetime]) -> _Indexed:
    return _Indexed(
        keywords=extract_keywords(text),
        important=frozenset(w for w in normalize_words(text) if len(w) > 4),
        date=date,
    )


def _score(poly: _Indexed, kalshi: _Indexed, tolerance_days: int) -> float:
    similarity = jaccard(poly.keywords, kalshi.keywords)

    if poly.date is not None and kalshi.date is not None:
        days_diff = abs((poly.date - kalshi.date).total_seconds()) / 86400.0
        if days_diff <= tolerance_days:
            similarity += max(0.0, 1.0 - days_diff / tolerance_days) * 0.2
        else:
            similarity *= 0.7

    common = len(poly.important & kalshi.important)
    if common:
        similarity += min(0.2, common * 0.05)

    return min(1.0, similarity)


def market_similarity(
    poly: PolymarketMarket,
    kalshi: KalshiMarket,
    tolerance_days: Optional[int] = None,
) -> float:
    """Similarity in [0, 1] from keyword overlap, close-date proximity and shared long words."""
    tolerance = tolerance_days or settings.ARB_DATE_TOLERANCE_DAYS
    return _score(
        _index(polymarket_text(poly), poly.end_date),
        _index(kalshi_text(kalshi), kalshi.close_time),
        tolerance,
    )


# ------------------------------------------------------------------ #
#  Margins
# ------------------------------------------------------------------ #


class Margins(NamedTuple):
    yes_poly_plus_no_kalshi: float
    no_poly_plus_yes_kalshi: float
    best_margin: Optional[float]
    direction: Optional[ArbitrageDirection]

    @property
    def is_arbitrage(self) -> bool:
        return self.direction is not None


def compute_margins(
    poly_yes: float,
    poly_no: float,
    kalshi_yes_ask: float,
    kalshi_no_ask: float,
    threshold: Optional[float] = None,
) -> Margins:
    """Both cross-venue legs in cents on a 0-100 scale.

    Polymarket prices are dollars (0-1), Kalshi asks are cents. A leg
    qualifies when its summed cost is strictly below ``threshold`` (100 by
    default) and leaves a positive margin below the $1 payout.
    """
    if threshold is None:
        threshold = settings.ARB_THRESHOLD

    yes_no = round(poly_yes * 100.0 + kalshi_no_ask, 6)
    no_yes = round(poly_no * 100.0 + kalshi_yes_ask, 6)

    best_margin: Optional[float] = None
    direction: Optional[ArbitrageDirection] = None
    for total, tag in (
        (yes_no, ArbitrageDirection.YES_POLY_NO_KALSHI),
        (no_yes, ArbitrageDirection.NO_POLY_YES_KALSHI),
    ):
        margin = round(100.0 - total, 6)
        if total < threshold and margin > 0 and (best_margin is None or margin > best_margin):
            best_margin = margin
            direction = tag

    return Margins(yes_no, no_yes, best_margin, direction)


# ------------------------------------------------------------------ #
#  Matching
# ------------------------------------------------------------------ #


@dataclass
class MarketMatch:
    polymarket: PolymarketMarket
    kalshi: KalshiMarket
    similarity: float


def find_matches(
    poly_markets: Iterable[PolymarketMarket],
    kalshi_markets: Iterable[KalshiMarket],
    min_similarity: Optional[float] = None,
    tolerance_days: Optional[int] = None,
) -> list[MarketMatch]:
    """Score candidate pairs and assign each market to at most one partner.

    Only pairs sharing at least one keyword are scored (inverted index over
    the Kalshi side). The assignment is greedy by descending similarity.
    """
    min_similarity = settings.ARB_MIN_SIMILARITY if min_similarity is None else min_similarity
    tolerance = tolerance_days or settings.ARB_DATE_TOLERANCE_DAYS

    kalshi_list = list(kalshi_markets)
    kalshi_indexed = [_index(kalshi_text(k), k.close_time) for k in kalshi_list]
    inverted: dict[str, list[int]] = defaultdict(list)
    for idx, entry in enumerate(kalshi_indexed):
        for word in entry.keywords:
            inverted[word].append(idx)

    candidates: list[MarketMatch] = []
    for poly in poly_markets:
        poly_indexed = _index(polymarket_text(poly), poly.end_date)
        seen: set[int] = set()
        for word in poly_indexed.keywords:
            seen.update(inverted.get(word, ()))
        for idx in seen:
            score = _score(poly_indexed, kalshi_indexed[idx], tolerance)
            if score >= min_similarity:
                candidates.append(MarketMatch(poly, kalshi_list[idx], score))

    candidates.sort(key=lambda m: (-m.similarity, m.polymarket.id, m.kalshi.ticker))
    used_poly: set[str] = set()
    used_kalshi: set[str] = set()
    matches: list[MarketMatch] = []
    for match in candidates:
        if match.polymarket.id in used_poly or match.kalshi.ticker in used_kalshi:
            continue
        used_poly.add(match.polymarket.id)
        used_kalshi.add(match.kalshi.ticker)
        matches.append(match)
    return matches


def opportunity_row(match: MarketMatch, margins: Margins) -> dict:
    poly, kalshi = match.polymarket, match.kalshi
    event_ticker = kalshi.event_ticker or None
    return {
        "polymarket_id": poly.id,
        "polymarket_question": poly.question,
        "polymarket_slug": poly.slug or None,
        "polymarket_condition_id": poly.condition_id or None,
        "polymarket_link": build_polymarket_market_url(market_slug=poly.slug, market_id=poly.id),
        "polymarket_yes_price": poly.yes_price,
        "polymarket_no_price": poly.no_price,
        "polymarket_liquidity": poly.liquidity,
        "polymarket_end_date": poly.end_date,
        "kalshi_ticker": kalshi.ticker,
        "kalshi_title": kalshi.title,
        "kalshi_event_ticker": event_ticker,
        "kalshi_link": build_kalshi_market_url(market_ticker=kalshi.ticker, event_ticker=event_ticker),
        "kalshi_yes_bid": kalshi.yes_bid,
        "kalshi_yes_ask": kalshi.yes_ask,
        "kalshi_no_bid": kalshi.no_bid,
        "kalshi_no_ask": kalshi.no_ask,
        "kalshi_liquidity": kalshi.liquidity,
        "kalshi_close_time": kalshi.close_time,
        "yes_poly_plus_no_kalshi": margins.yes_poly_plus_no_kalshi,
        "no_poly_plus_yes_kalshi": margins.no_poly_plus_yes_kalshi,
        "best_margin": margins.best_margin,
        "arbitrage_type": margins.direction,
        "similarity_score": round(match.similarity, 6),
        "match_metadata": {
            "poly_description": poly.description or None,
            "kalshi_subtitle": kalshi.subtitle or None,
            "poly_volume": poly.volume,
            "kalshi_volume": kalshi.volume,
        },
    }


# ------------------------------------------------------------------ #
#  Persistence
# ------------------------------------------------------------------ #


async def upsert_opportunities(session: AsyncSession, rows: list[dict]) -> list[ArbitrageOpportunity]:
    """Insert or refresh rows keyed on (polymarket_id, kalshi_ticker).

    Snapshots are overwritten; ``is_verified`` and ``created_at`` survive.
    """
    if not rows:
        return []

    now = utcnow()
    dialect = session.get_bind().dialect.name
    insert_fn = {"sqlite": sqlite_insert, "postgresql": postgresql_insert}.get(dialect)

    if insert_fn is not None:
        values = [
            {**row, "id": uuid.uuid4().hex, "is_verified": False,
             "created_at": now, "updated_at": now}
            for row in rows
        ]
        stmt = insert_fn(ArbitrageOpportunity).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["polymarket_id", "kalshi_ticker"],
            set_={
                name: getattr(stmt.excluded, name)
                for name in values[0]
                if name not in _PRESERVED_COLUMNS
            },
        )
        await session.execute(stmt)
    else:
        for row in rows:
            existing = (
                await session.execute(
                    select(ArbitrageOpportunity).where(
                        ArbitrageOpportunity.polymarket_id == row["polymarket_id"],
                        ArbitrageOpportunity.kalshi_ticker == row["kalshi_ticker"],
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                session.add(ArbitrageOpportunity(**row, is_verified=False, created_at=now, updated_at=now))
            else:
                for key, value in row.items():
                    setattr(existing, key, value)
                existing.updated_at = now
        await session.flush()

    keys = [(row["polymarket_id"], row["kalshi_ticker"]) for row in rows]
    result = await session.execute(
        select(ArbitrageOpportunity)
        .where(tuple_(ArbitrageOpportunity.polymarket_id, ArbitrageOpportunity.kalshi_ticker).in_(keys))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# ------------------------------------------------------------------ #
#  Engine
# ------------------------------------------------------------------ #


class ArbitrageDiscoveryEngine:
    """Match the Polymarket and Kalshi catalogs and store cross-venue arbitrage."""

    def __init__(self, poly_client=None, kalshi=None):
        self._poly_client = poly_client or polymarket_client
        self._kalshi_client = kalshi or kalshi_client

    @staticmethod
    def _tradeable_poly(markets: Iterable[PolymarketMarket], min_liquidity: float) -> list[PolymarketMarket]:
        return [m for m in markets if m.has_prices and m.liquidity >= min_liquidity]

    @staticmethod
    def _tradeable_kalshi(markets: Iterable[KalshiMarket], min_liquidity: float) -> list[KalshiMarket]:
        return [m for m in markets if m.has_prices and m.liquidity >= min_liquidity]

    def evaluate(self, matches: Iterable[MarketMatch]) -> list[dict]:
        rows: list[dict] = []
        for match in matches:
            poly, kalshi = match.polymarket, match.kalshi
            margins = compute_margins(poly.yes_price, poly.no_price, kalshi.yes_ask, kalshi.no_ask)
            if not margins.is_arbitrage:
                continue
            logger.info(
                "Arbitrage found",
                polymarket_id=poly.id,
                kalshi_ticker=kalshi.ticker,
                margin=margins.best_margin,
                direction=margins.direction.value,
                similarity=round(match.similarity, 3),
            )
            rows.append(opportunity_row(match, margins))
        return rows

    async def discover(self) -> list[ArbitrageOpportunity]:
        min_liquidity = settings.ARB_MIN_LIQUIDITY
        poly_markets, kalshi_markets = await asyncio.gather(
            self._poly_client.get_all_active_markets(min_liquidity=min_liquidity),
            self._kalshi_client.get_all_open_markets(),
        )
        poly_markets = self._tradeable_poly(poly_markets, min_liquidity)
        kalshi_markets = self._tradeable_kalshi(kalshi_markets, min_liquidity)
        logger.info(
            "Loaded catalogs for matching",
            polymarket_count=len(poly_markets),
            kalshi_count=len(kalshi_markets),
        )
        if not poly_markets or not kalshi_markets:
            return []

        matches = find_matches(poly_markets, kalshi_markets)
        rows = self.evaluate(matches)

        stored: list[ArbitrageOpportunity] = []
        batch_size = max(1, settings.ARB_UPSERT_BATCH_SIZE)
        failed_batches = 0
        for start in range(0, len(rows), batch_size):
            batch = rows[start:start + batch_size]
            try:
                async with AsyncSessionLocal() as session:
                    stored.extend(await upsert_opportunities(session, batch))
                    await session.commit()
            except SQLAlchemyError as exc:
                failed_batches += 1
                logger.error(
                    "Failed to upsert arbitrage batch",
                    batch_start=start,
                    pairs=[f"{r['polymarket_id']}/{r['kalshi_ticker']}" for r in batch],
                    error=str(exc),
                )

        logger.info(
            "Arbitrage discovery complete",
            matches=len(matches),
            opportunities=len(rows),
            stored=len(stored),
            failed_batches=failed_batches,
            best_margin=max((r["best_margin"] for r in rows), default=None),
        )
        return stored


# Singleton instance
arbitrage_discovery_engine = ArbitrageDiscoveryEngine()

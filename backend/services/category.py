"""
Market category classification.

Two pure functions feed the ``category`` column of whale activity:

* ``category_from_tags`` maps the venue's market tags through a fixed
  priority table (sports > politics > economic > crypto > other).
* ``detect_category`` scores keyword hits over the market title and slug
  (strong hit = 3 points, moderate hit = 1) and needs at least one strong hit
  to leave ``other``.

``classify_market`` combines them: tags first, keywords when tags are absent
or only map to ``other``.
"""

import re
from functools import lru_cache
from typing import Iterable, Optional

POLITICS = "politics"
CRYPTO = "crypto"
SPORTS = "sports"
ECONOMIC = "economic"
OTHER = "other"

CATEGORIES = (POLITICS, CRYPTO, SPORTS, ECONOMIC, OTHER)

# Tag -> category, checked in priority order. A tag matches when it equals
# or contains one of the keywords.
TAG_CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    (
        SPORTS,
        (
            "sports", "sport", "nfl", "nba", "nhl", "mlb", "mls", "soccer",
            "football", "basketball", "baseball", "hockey", "tennis", "golf",
            "games",
        ),
    ),
    (
        POLITICS,
        ("politics", "political", "election", "elections", "president", "presidential"),
    ),
    (
        ECONOMIC,
        (
            "economic", "economics", "economy", "finance", "financial",
            "markets", "federal-reserve", "fed",
        ),
    ),
    (
        CRYPTO,
        ("crypto", "cryptocurrency", "bitcoin", "btc", "ethereum", "eth", "blockchain", "defi"),
    ),
]

# Title/slug keywords per category. Dict order is the tie-break order.
CATEGORY_KEYWORDS: dict[str, dict[str, tuple[str, ...]]] = {
    POLITICS: {
        "strong": (
            "president", "presidential", "election", "elections", "biden", "trump",
            "democrat", "republican", "senate", "congress", "senator", "governor",
            "mayor", "primaries", "primary", "vote", "voting", "ballot",
            "impeachment", "cabinet", "supreme court", "scotus", "nomination",
            "veto", "approval rating", "inauguration", "state of the union",
            "debate", "debates", "campaign", "midterm", "midterms", "referendum",
            "brexit", "democratic party", "republican party", "gop", "liberal",
            "conservative", "far-left", "far-right", "socialist", "government",
            "legislature", "parliament", "prime minister", "minister", "secretary",
            "ambassador", "embassy",
        ),
        "moderate": (
            "policy", "policies", "bill", "law", "legislation", "regulation",
            "subpoena", "indictment", "lawsuit", "court", "judge", "justice",
            "prosecutor", "attorney general", "fbi", "cia", "national security",
            "homeland security", "border", "immigration", "visa",
        ),
    },
    CRYPTO: {
        "strong": (
            "bitcoin", "btc", "ethereum", "eth", "ether", "crypto", "cryptocurrency",
            "cryptocurrencies", "altcoin", "altcoins", "stablecoin", "stablecoins",
            "usdt", "usdc", "tether", "blockchain", "web3", "defi", "decentralized",
            "nft", "nfts", "dao", "smart contract", "staking", "validator",
            "proof of stake", "proof of work", "coinbase", "binance", "ftx",
            "kraken", "uniswap", "opensea", "metamask", "solana", "cardano",
            "polkadot", "chainlink", "polygon", "matic", "avalanche", "avax",
            "litecoin", "xrp", "ripple", "dogecoin", "doge", "shiba", "meme coin",
            "halving", "hard fork",
        ),
        "moderate": (
            "hodl", "satoshi", "whale", "pump", "dump", "rug pull", "hack",
            "exploit", "airdrop", "ico", "listing", "delisting", "token", "tokens",
            "sec", "gbtc", "etf", "spot etf",
        ),
    },
    SPORTS: {
        "strong": (
            "nfl", "super bowl", "superbowl", "nba", "nba finals", "nhl",
            "stanley cup", "mlb", "world series", "mls", "premier league",
            "champions league", "uefa", "fifa", "world cup", "olympics", "olympic",
            "team", "player", "athlete", "coach", "game", "games", "match",
            "playoff", "playoffs", "championship", "champion", "champions",
            "tournament", "bracket", "draft", "mvp", "most valuable player",
            "all-star", "rookie of the year", "football", "soccer", "basketball",
            "baseball", "hockey", "tennis", "golf", "boxing", "mma", "ufc",
            "nascar", "formula 1", "f1", "cricket", "rugby", "touchdown",
            "home run", "grand slam",
        ),
        "moderate": (
            "score", "points", "win", "wins", "season", "regular season",
            "postseason", "preseason", "free agency", "free agent", "injury",
            "suspension",
        ),
    },
    ECONOMIC: {
        "strong": (
            "gdp", "gross domestic product", "inflation", "cpi",
            "consumer price index", "ppi", "unemployment", "jobless", "jobs report",
            "nonfarm payroll", "non-farm payroll", "nfp", "fed", "federal reserve",
            "interest rate", "interest rates", "fed funds", "monetary policy",
            "quantitative easing", "rate hike", "rate cut", "recession",
            "economic growth", "stock market", "dow jones", "s&p 500", "sp500",
            "nasdaq", "bear market", "bull market", "vix", "treasury", "treasuries",
            "bond", "bonds", "yields", "commodity", "commodities", "gold", "silver",
            "oil", "crude", "natural gas", "dollar", "usd", "yen", "euro", "yuan",
            "forex", "exchange rate", "earnings", "revenue", "ipo", "merger",
            "acquisition", "stimulus", "tariff", "tariffs", "trade war",
            "trade deal", "debt ceiling", "budget", "deficit",
        ),
        "moderate": (
            "economic", "economy", "financial", "finance", "banking", "bank",
            "banks", "lending", "credit", "debt", "default", "bankruptcy",
            "bailout", "consumer", "retail", "supply chain", "manufacturing",
        ),
    },
}

_STRONG_WEIGHT = 3
_MODERATE_WEIGHT = 1
_MIN_CONFIDENT_SCORE = 3


@lru_cache(maxsize=None)
def _keyword_pattern(keyword: str) -> re.Pattern:
    # Whole-word match; slugs separate words with "-" which \b treats as a boundary.
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])")


def _contains(text: str, keyword: str) -> bool:
    return _keyword_pattern(keyword).search(text) is not None


def category_from_tags(tags: Optional[Iterable[str]]) -> str:
    """Infer a category from venue tags (labels or slugs)."""
    normalized = [str(t).strip().lower() for t in (tags or []) if str(t or "").strip()]
    if not normalized:
        return OTHER
    for category, keywords in TAG_CATEGORY_KEYWORDS:
        for tag in normalized:
            if any(tag == kw or kw in tag for kw in keywords):
                return category
    return OTHER


def score_categories(text: str) -> dict[str, int]:
    normalized = text.lower().strip()
    scores = {category: 0 for category in CATEGORY_KEYWORDS}
    for category, groups in CATEGORY_KEYWORDS.items():
        for keyword in groups["strong"]:
            if _contains(normalized, keyword):
                scores[category] += _STRONG_WEIGHT
        for keyword in groups["moderate"]:
            if _contains(normalized, keyword):
                scores[category] += _MODERATE_WEIGHT
    return scores


def detect_category(title: Optional[str], slug: Optional[str] = None) -> str:
    """Keyword fallback over the market title and slug."""
    search_text = " ".join(part for part in (title, slug) if part and isinstance(part, str))
    if not search_text:
        return OTHER

    scores = score_categories(search_text)
    best = max(scores.values())
    if best < _MIN_CONFIDENT_SCORE:
        return OTHER
    for category, score in scores.items():
        if score == best:
            return category
    return OTHER


def classify_market(
    tags: Optional[Iterable[str]],
    title: Optional[str],
    slug: Optional[str] = None,
) -> str:
    category = category_from_tags(tags)
    if category != OTHER:
        return category
    return detect_category(title, slug)

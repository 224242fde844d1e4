"""Shared fixtures for the whale signal backend tests."""

import asyncio
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import models.database as database
from models import RawTrade
from models.database import Base, SubscriptionTier, TrackedWallet


class FixedClock:
    """Mutable clock for injecting into FrequencyController."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def session_factory(tmp_path, monkeypatch):
    """Fresh SQLite schema per test, wired into every module that opens sessions."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'whales.db'}"

    async def _create_schema():
        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create_schema())

    engine = create_async_engine(url, poolclass=NullPool)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    import services.arbitrage_discovery as arbitrage_discovery
    import services.maintenance as maintenance
    import services.notifier as notifier
    import services.trade_ingestion as trade_ingestion
    import workers.trade_poller_worker as trade_poller_worker

    monkeypatch.setattr(database, "async_engine", engine)
    for module in (database, trade_ingestion, notifier, arbitrage_discovery, maintenance, trade_poller_worker):
        monkeypatch.setattr(module, "AsyncSessionLocal", factory)
    return factory


@pytest.fixture
def make_wallet():
    """Async factory: ``await make_wallet(session, **overrides)``."""
    counter = {"n": 0}

    async def _make(session, **overrides) -> TrackedWallet:
        counter["n"] += 1
        fields = {
            "address": f"0x{counter['n']:040x}",
            "label": f"Whale {counter['n']}",
            "subscription_type": SubscriptionTier.FREE,
            "min_usd_value": Decimal("0"),
            "is_copytrade": False,
            "copytrade_investment": Decimal("500"),
            "partial_close_percentage": Decimal("100"),
        }
        fields.update(overrides)
        wallet = TrackedWallet(**fields)
        session.add(wallet)
        await session.flush()
        return wallet

    return _make


# ---------------------------------------------------------------------------
# Raw API payloads
# ---------------------------------------------------------------------------


@pytest.fixture
def raw_trade_row():
    """A data-api /trades row."""
    return {
        "proxyWallet": "0xABCDEF0000000000000000000000000000000001",
        "side": "BUY",
        "asset": "71321045679252212594626385532706912750332728571942532289631379312455583992563",
        "conditionId": "0xabc",
        "size": 100,
        "price": 0.4,
        "timestamp": 1767225600,
        "title": "Will the Fed cut interest rates in March?",
        "slug": "fed-cut-march",
        "eventSlug": "fed-decision-march",
        "icon": "https://polymarket-upload.s3.amazonaws.com/fed.png",
        "outcome": "Yes",
        "outcomeIndex": 0,
        "transactionHash": "0xfeed01",
        "name": "whale",
        "pseudonym": "Quiet-Whale",
    }


@pytest.fixture
def make_trade():
    """Build a RawTrade with sensible defaults; keyword args override fields."""
    counter = {"n": 0}

    def _make(**overrides) -> RawTrade:
        counter["n"] += 1
        fields = {
            "side": "BUY",
            "activity_type": "TRADE",
            "wallet_address": "0xwhale",
            "asset": "token-yes",
            "condition_id": "0xabc",
            "outcome": "Yes",
            "outcome_index": 0,
            "size": Decimal("100"),
            "price": Decimal("0.40"),
            "timestamp": datetime(2026, 1, 1, 12, 0, counter["n"] % 60),
            "transaction_hash": f"0xtx{counter['n']:04d}",
            "title": "Will the Fed cut interest rates in March?",
            "slug": "fed-cut-march",
            "tags": ["Economy"],
        }
        fields.update(overrides)
        return RawTrade(**fields)

    return _make


@pytest.fixture
def raw_gamma_market():
    return {
        "id": "512345",
        "question": "Will Bitcoin close above $100,000 on December 31?",
        "conditionId": "0xbtc100k",
        "slug": "bitcoin-above-100k-dec-31",
        "description": "Resolves YES if the BTC/USD price is above $100,000.",
        "outcomes": '["Yes", "No"]',
        "outcomePrices": '["0.62", "0.38"]',
        "liquidityNum": 25000.5,
        "volumeNum": 150000,
        "endDate": "2026-12-31T23:59:59Z",
        "tags": [{"label": "Crypto", "slug": "crypto"}],
    }


@pytest.fixture
def raw_kalshi_market():
    return {
        "ticker": "KXBTCY-26DEC31-T100000",
        "event_ticker": "KXBTCY-26DEC31",
        "title": "Bitcoin above $100,000 on December 31?",
        "subtitle": "BTC price at year end",
        "yes_bid": 58,
        "yes_ask": 60,
        "no_bid": 39,
        "no_ask": 41,
        "liquidity_dollars": "5400.25",
        "volume": 8200,
        "close_time": "2026-12-31T23:00:00Z",
        "status": "active",
    }


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 1, 9, 0, 0))

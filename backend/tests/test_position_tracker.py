import random
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import (  # noqa: E402
    ActivityRecord,
    ActivityStatus,
    ActivityType,
    CopyPositionStatus,
    CopyTradePosition,
    SubscriptionTier,
)
from services.frequency_controller import FrequencyController  # noqa: E402
from services.position_tracker import PositionTracker, percent_change  # noqa: E402
from services.trade_ingestion import TradeIngestionEngine  # noqa: E402

T0 = datetime(2026, 1, 1, 12, 0, 0)


def _engine(clock) -> TradeIngestionEngine:
    return TradeIngestionEngine(tracker=PositionTracker(admission=FrequencyController(now=clock)))


async def _records(session, **filters):
    stmt = select(ActivityRecord).filter_by(**filters).order_by(ActivityRecord.activity_timestamp.asc())
    return list((await session.execute(stmt)).scalars().all())


def test_percent_change():
    assert percent_change(Decimal("0.40"), Decimal("0.65")) == Decimal("62.5")
    assert percent_change(Decimal("0.50"), Decimal("0.25")) == Decimal("-50")
    assert percent_change(Decimal("0"), Decimal("0.25")) is None
    assert percent_change(None, Decimal("0.25")) is None


@pytest.mark.asyncio
async def test_buy_then_sell_closes_position_and_copy_trade(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session, is_copytrade=True, copytrade_investment=Decimal("500"))

        opened = await engine.ingest(session, wallet, make_trade(price=Decimal("0.40"), timestamp=T0))
        assert opened.action == "opened"
        assert opened.alert is True
        assert opened.record.status == ActivityStatus.OPEN

        position = (await session.execute(select(CopyTradePosition))).scalars().one()
        assert position.shares_bought == Decimal("1250")
        assert position.entry_price == Decimal("0.40")
        assert position.status == CopyPositionStatus.OPEN

        closed = await engine.ingest(
            session,
            wallet,
            make_trade(side="SELL", price=Decimal("0.65"), timestamp=T0 + timedelta(hours=2)),
        )
        assert closed.action == "closed"
        assert closed.alert is True
        await session.commit()

    async with session_factory() as session:
        buy = (await _records(session, activity_type=ActivityType.BUY))[0]
        assert buy.status == ActivityStatus.CLOSED
        assert buy.realized_pnl == Decimal("25")
        assert buy.percent_pnl == Decimal("62.5")
        assert buy.realized_outcome == "Yes"

        sell = (await _records(session, activity_type=ActivityType.SELL))[0]
        assert sell.status == ActivityStatus.CLOSED
        assert sell.is_orphan is False
        assert sell.realized_pnl == Decimal("25")

        position = (await session.execute(select(CopyTradePosition))).scalars().one()
        assert position.status == CopyPositionStatus.CLOSED
        assert position.shares_sold == Decimal("1250")
        assert position.exit_price == Decimal("0.65")
        assert position.realized_pnl == Decimal("312.5")
        assert position.percent_pnl == Decimal("62.5")
        assert position.final_value == Decimal("812.5")
        assert position.entry_price * position.shares_bought == position.simulated_investment


@pytest.mark.asyncio
async def test_second_buy_on_same_key_is_added(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session, subscription_type=SubscriptionTier.PAID)
        first = await engine.ingest(session, wallet, make_trade(timestamp=T0))
        second = await engine.ingest(session, wallet, make_trade(timestamp=T0 + timedelta(minutes=5)))

        assert (first.action, first.record.status) == ("opened", ActivityStatus.OPEN)
        assert (second.action, second.record.status) == ("added", ActivityStatus.ADDED)
        # Adding never touches the admission quota
        window = await FrequencyController(now=clock).peek(session, wallet)
        assert window.remaining_quota == 2

        # A different outcome of the same market is a separate position
        other = await engine.ingest(
            session, wallet, make_trade(outcome="No", outcome_index=1, timestamp=T0 + timedelta(minutes=6))
        )
        assert other.action == "opened"


@pytest.mark.asyncio
async def test_sell_closes_every_active_record_oldest_first(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session)
        await engine.ingest(session, wallet, make_trade(price=Decimal("0.40"), size=Decimal("100"), timestamp=T0))
        await engine.ingest(
            session,
            wallet,
            make_trade(price=Decimal("0.60"), size=Decimal("50"), timestamp=T0 + timedelta(minutes=1)),
        )
        result = await engine.ingest(
            session,
            wallet,
            make_trade(side="SELL", price=Decimal("0.50"), size=Decimal("150"), timestamp=T0 + timedelta(minutes=2)),
        )

        buys = await _records(session, activity_type=ActivityType.BUY)
        assert [b.status for b in buys] == [ActivityStatus.CLOSED, ActivityStatus.CLOSED]
        assert buys[0].realized_pnl == Decimal("10")
        assert buys[1].realized_pnl == Decimal("-5")
        assert buys[1].percent_pnl.quantize(Decimal("0.0001")) == Decimal("-16.6667")

        # Aggregate: 5 profit on 70 cost
        assert result.record.realized_pnl == Decimal("5")
        assert result.record.percent_pnl.quantize(Decimal("0.0001")) == Decimal("7.1429")


@pytest.mark.asyncio
async def test_partial_sell_realizes_pnl_on_sold_shares_only(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session)
        await engine.ingest(session, wallet, make_trade(price=Decimal("0.40"), size=Decimal("100"), timestamp=T0))
        result = await engine.ingest(
            session,
            wallet,
            make_trade(side="SELL", price=Decimal("0.65"), size=Decimal("40"), timestamp=T0 + timedelta(hours=1)),
        )

        assert result.action == "closed"
        buy = (await _records(session, activity_type=ActivityType.BUY))[0]
        assert buy.status == ActivityStatus.CLOSED
        assert buy.realized_pnl == Decimal("10")
        assert buy.percent_pnl == Decimal("62.5")
        assert result.record.realized_pnl == Decimal("10")
        assert result.record.percent_pnl == Decimal("62.5")


@pytest.mark.asyncio
async def test_sell_matches_later_buys_only_after_earlier_ones(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session)
        await engine.ingest(session, wallet, make_trade(price=Decimal("0.40"), size=Decimal("100"), timestamp=T0))
        await engine.ingest(
            session,
            wallet,
            make_trade(price=Decimal("0.60"), size=Decimal("50"), timestamp=T0 + timedelta(minutes=1)),
        )
        result = await engine.ingest(
            session,
            wallet,
            make_trade(side="SELL", price=Decimal("0.50"), size=Decimal("100"), timestamp=T0 + timedelta(minutes=2)),
        )

        buys = await _records(session, activity_type=ActivityType.BUY)
        assert [b.status for b in buys] == [ActivityStatus.CLOSED, ActivityStatus.CLOSED]
        assert buys[0].realized_pnl == Decimal("10")
        assert buys[1].realized_pnl == Decimal("0")
        assert result.record.realized_pnl == Decimal("10")
        assert result.record.percent_pnl == Decimal("25")


@pytest.mark.asyncio
async def test_copytrade_wallet_without_investment_still_records(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session, is_copytrade=True, copytrade_investment=Decimal("0"))
        opened = await engine.ingest(session, wallet, make_trade(price=Decimal("0.40"), timestamp=T0))
        closed = await engine.ingest(
            session,
            wallet,
            make_trade(side="SELL", price=Decimal("0.50"), timestamp=T0 + timedelta(hours=1)),
        )

        assert opened.action == "opened"
        assert opened.record.status == ActivityStatus.CLOSED
        assert closed.action == "closed"
        assert closed.record.realized_pnl == Decimal("10")
        positions = (await session.execute(select(CopyTradePosition))).scalars().all()
        assert positions == []


@pytest.mark.asyncio
async def test_orphan_sell_is_stored_closed_without_alert(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session, is_copytrade=True)
        result = await engine.ingest(session, wallet, make_trade(side="SELL", price=Decimal("0.55")))

        assert result.action == "orphan"
        assert result.alert is False
        assert result.record.status == ActivityStatus.CLOSED
        assert result.record.is_orphan is True
        assert result.record.realized_pnl is None
        positions = (await session.execute(select(CopyTradePosition))).scalars().all()
        assert positions == []


@pytest.mark.asyncio
async def test_free_tier_quota_only_gates_opening_alerts(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session, frequency=2)
        a = await engine.ingest(session, wallet, make_trade(condition_id="0xa", timestamp=T0))
        b = await engine.ingest(session, wallet, make_trade(condition_id="0xb", timestamp=T0 + timedelta(minutes=1)))
        c = await engine.ingest(session, wallet, make_trade(condition_id="0xc", timestamp=T0 + timedelta(minutes=2)))
        a2 = await engine.ingest(session, wallet, make_trade(condition_id="0xa", timestamp=T0 + timedelta(minutes=3)))
        sell_c = await engine.ingest(
            session,
            wallet,
            make_trade(side="SELL", condition_id="0xc", price=Decimal("0.45"), timestamp=T0 + timedelta(minutes=4)),
        )

        assert [a.alert, b.alert, c.alert] == [True, True, False]
        # Denied opening BUY is still tracked so its SELL can close it
        assert c.record.status == ActivityStatus.OPEN
        assert c.record.is_alerted is False
        assert a2.action == "added"
        assert a2.alert is True
        assert sell_c.action == "closed"
        assert c.record.status == ActivityStatus.CLOSED


@pytest.mark.asyncio
async def test_below_threshold_buy_is_tracked_without_consuming_quota(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)

    async with session_factory() as session:
        wallet = await make_wallet(session, min_usd_value=Decimal("1000"))
        small = await engine.ingest(session, wallet, make_trade(condition_id="0xa", timestamp=T0))
        big = await engine.ingest(
            session, wallet, make_trade(condition_id="0xb", size=Decimal("5000"), timestamp=T0 + timedelta(minutes=1))
        )

        assert (small.action, small.alert) == ("opened", False)
        assert (big.action, big.alert) == ("opened", True)


@pytest.mark.asyncio
async def test_unique_index_rejects_second_open_record(session_factory, make_wallet):
    async with session_factory() as session:
        wallet = await make_wallet(session)
        for tx in ("0x1", "0x2"):
            session.add(
                ActivityRecord(
                    wallet_id=wallet.id,
                    activity_type=ActivityType.BUY,
                    transaction_hash=tx,
                    condition_id="0xabc",
                    asset="token-yes",
                    outcome_index=0,
                    amount=Decimal("10"),
                    price=Decimal("0.5"),
                    usd_value=Decimal("5"),
                    status=ActivityStatus.OPEN,
                    activity_timestamp=T0,
                )
            )
        with pytest.raises(IntegrityError):
            await session.flush()


@pytest.mark.asyncio
async def test_reconcile_open_duplicates_demotes_all_but_oldest(session_factory, make_wallet):
    async with session_factory() as session:
        # Simulate rows imported from a database without the partial index
        await session.execute(text("DROP INDEX uq_activity_single_open"))
        wallet = await make_wallet(session)
        for minute in (5, 0, 9):
            session.add(
                ActivityRecord(
                    wallet_id=wallet.id,
                    activity_type=ActivityType.BUY,
                    transaction_hash=f"0x{minute}",
                    condition_id="0xabc",
                    asset="token-yes",
                    outcome_index=0,
                    amount=Decimal("10"),
                    price=Decimal("0.5"),
                    usd_value=Decimal("5"),
                    status=ActivityStatus.OPEN,
                    activity_timestamp=T0 + timedelta(minutes=minute),
                )
            )
        await session.flush()

        tracker = PositionTracker()
        assert await tracker.reconcile_open_duplicates(session) == 2
        assert await tracker.reconcile_open_duplicates(session) == 0

        records = await _records(session)
        assert [r.status for r in records] == [ActivityStatus.OPEN, ActivityStatus.ADDED, ActivityStatus.ADDED]
        assert records[0].transaction_hash == "0x0"


@pytest.mark.asyncio
async def test_random_sequences_keep_single_open_record_per_key(session_factory, make_wallet, make_trade, clock):
    engine = _engine(clock)
    rng = random.Random(20260101)
    keys = [("0xa", 0), ("0xa", 1), ("0xb", 0)]

    async with session_factory() as session:
        wallet = await make_wallet(session, is_copytrade=True)
        for step in range(60):
            condition_id, outcome_index = rng.choice(keys)
            side = rng.choice(["BUY", "BUY", "SELL"])
            price = Decimal(rng.randint(5, 95)) / Decimal(100)
            await engine.ingest(
                session,
                wallet,
                make_trade(
                    side=side,
                    condition_id=condition_id,
                    outcome_index=outcome_index,
                    price=price,
                    timestamp=T0 + timedelta(minutes=step),
                ),
            )

            for key_condition, key_index in keys:
                open_count = await session.scalar(
                    select(func.count())
                    .select_from(ActivityRecord)
                    .where(
                        ActivityRecord.condition_id == key_condition,
                        ActivityRecord.outcome_index == key_index,
                        ActivityRecord.status == ActivityStatus.OPEN,
                    )
                )
                active = await engine.tracker.active_records(session, wallet.id, key_condition, key_index)
                assert open_count <= 1
                # An added record never exists without its open record
                assert open_count == (1 if active else 0)

        # Every copy position belongs to a BUY and never oversells
        positions = (await session.execute(select(CopyTradePosition))).scalars().all()
        for position in positions:
            assert position.remaining_shares >= Decimal("0")

"""
Turn raw data-api fills into ActivityRecords.

Each fill is deduplicated on (wallet, transaction_hash, asset, activity_type),
classified into an activity type and market category, and then routed:
BUY/SELL go through the position tracker, everything else is stored as-is
with no lifecycle status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import RawTrade
from models.database import (
    ActivityRecord,
    ActivityType,
    AsyncSessionLocal,
    TrackedWallet,
)
from services.category import classify_market
from services.position_tracker import PositionTracker, position_tracker
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("ingestion")

_ZERO = Decimal("0")

_TRANSFER_KINDS = {
    "TRANSFER": ActivityType.TRANSFER,
    "SWAP": ActivityType.SWAP,
    "STAKE": ActivityType.STAKE,
    "UNSTAKE": ActivityType.UNSTAKE,
}


class TradeDataError(ValueError):
    """A fill that cannot be turned into an activity record."""


@dataclass
class IngestResult:
    record: Optional[ActivityRecord]
    duplicate: bool = False
    alert: bool = False
    action: str = "recorded"  # opened | added | closed | orphan | recorded | duplicate | skipped
    closed_records: list[ActivityRecord] = field(default_factory=list)  # BUYs a SELL closed


@dataclass
class IngestSummary:
    wallet_id: str
    results: list[IngestResult] = field(default_factory=list)
    skipped: int = 0

    @property
    def new_records(self) -> list[IngestResult]:
        return [r for r in self.results if not r.duplicate and r.record is not None]

    @property
    def alerts(self) -> list[IngestResult]:
        return [r for r in self.results if r.alert]

    @property
    def duplicates(self) -> int:
        return sum(1 for r in self.results if r.duplicate)


def classify_activity(raw: RawTrade) -> ActivityType:
    if raw.activity_type in _TRANSFER_KINDS:
        return _TRANSFER_KINDS[raw.activity_type]
    if raw.activity_type in ("TRADE", ""):
        if raw.side == "BUY":
            return ActivityType.BUY
        if raw.side == "SELL":
            return ActivityType.SELL
    return ActivityType.OTHER


class TradeIngestionEngine:
    def __init__(self, tracker: Optional[PositionTracker] = None):
        self.tracker = tracker or position_tracker

    @staticmethod
    def _validate(raw: RawTrade, activity_type: ActivityType) -> None:
        if activity_type not in (ActivityType.BUY, ActivityType.SELL):
            return
        if not raw.condition_id:
            raise TradeDataError(f"trade {raw.transaction_hash} has no condition id")
        if raw.price <= _ZERO:
            raise TradeDataError(f"trade {raw.transaction_hash} has non-positive price {raw.price}")
        if raw.size <= _ZERO:
            raise TradeDataError(f"trade {raw.transaction_hash} has non-positive size {raw.size}")

    async def find_duplicate(
        self,
        session: AsyncSession,
        wallet_id: str,
        raw: RawTrade,
        activity_type: ActivityType,
    ) -> Optional[ActivityRecord]:
        result = await session.execute(
            select(ActivityRecord)
            .where(
                ActivityRecord.wallet_id == wallet_id,
                ActivityRecord.transaction_hash == raw.transaction_hash,
                ActivityRecord.asset == raw.asset,
                ActivityRecord.activity_type == activity_type,
            )
            .limit(1)
        )
        return result.scalars().first()

    def build_record(self, wallet: TrackedWallet, raw: RawTrade, activity_type: ActivityType) -> ActivityRecord:
        record = ActivityRecord(
            wallet_id=wallet.id,
            activity_type=activity_type,
            transaction_hash=raw.transaction_hash,
            condition_id=raw.condition_id or None,
            asset=raw.asset,
            outcome=raw.outcome,
            outcome_index=raw.outcome_index,
            amount=raw.size,
            price=raw.price,
            usd_value=raw.usd_value,
            category=classify_market(raw.tags, raw.title, raw.slug),
            activity_timestamp=raw.timestamp or utcnow(),
            is_alerted=False,
            is_orphan=False,
        )
        record.metadata_model = raw.to_metadata()
        return record

    async def ingest(self, session: AsyncSession, wallet: TrackedWallet, raw: RawTrade) -> IngestResult:
        """Record one fill. Caller holds ``tracker.lock_for(wallet.id)``.

        Raises ``TradeDataError`` for fills that cannot be recorded; nothing is
        written in that case.
        """
        activity_type = classify_activity(raw)
        self._validate(raw, activity_type)

        existing = await self.find_duplicate(session, wallet.id, raw, activity_type)
        if existing is not None:
            return IngestResult(record=existing, duplicate=True, alert=False, action="duplicate")

        record = self.build_record(wallet, raw, activity_type)

        if activity_type == ActivityType.BUY:
            meets_threshold = record.usd_value >= (wallet.min_usd_value or _ZERO)
            outcome = await self.tracker.record_buy(session, wallet, record, meets_threshold=meets_threshold)
            return IngestResult(record=record, alert=outcome.alert, action=outcome.action)

        if activity_type == ActivityType.SELL:
            outcome = await self.tracker.record_sell(session, wallet, record)
            return IngestResult(
                record=record,
                alert=outcome.alert,
                action=outcome.action,
                closed_records=outcome.closed_records,
            )

        # Transfer-like activity has no position lifecycle
        record.status = None
        session.add(record)
        await session.flush()
        return IngestResult(record=record, alert=False, action="recorded")

    async def ingest_batch(
        self,
        session: AsyncSession,
        wallet: TrackedWallet,
        trades: Iterable[RawTrade],
    ) -> IngestSummary:
        """Ingest fills oldest-first, skipping and counting bad ones.

        ``trades`` is in provider order (newest first). Timestamps only have
        one-second resolution, so fills sharing a second keep their reversed
        provider order: a BUY and SELL in the same second stay BUY-then-SELL.
        """
        summary = IngestSummary(wallet_id=wallet.id)
        ordered = sorted(reversed(list(trades)), key=lambda t: t.timestamp or datetime.min)
        for raw in ordered:
            try:
                summary.results.append(await self.ingest(session, wallet, raw))
            except TradeDataError as exc:
                summary.skipped += 1
                summary.results.append(IngestResult(record=None, action="skipped"))
                logger.warning(
                    "Skipping bad trade",
                    wallet_id=wallet.id,
                    condition_id=raw.condition_id,
                    transaction_hash=raw.transaction_hash,
                    error=str(exc),
                )
        return summary

    async def ingest_wallet_trades(self, wallet_id: str, trades: list[RawTrade]) -> IngestSummary:
        """One unit of work for a wallet: lock, ingest, commit.

        Persistence errors roll back the whole batch and propagate.
        """
        async with self.tracker.lock_for(wallet_id):
            async with AsyncSessionLocal() as session:
                wallet = await session.get(TrackedWallet, wallet_id)
                if wallet is None:
                    logger.warning("Wallet disappeared before ingestion", wallet_id=wallet_id)
                    return IngestSummary(wallet_id=wallet_id)
                try:
                    summary = await self.ingest_batch(session, wallet, trades)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        new = len(summary.new_records)
        if new or summary.skipped:
            logger.info(
                "Ingested wallet trades",
                wallet_id=wallet_id,
                new=new,
                duplicates=summary.duplicates,
                skipped=summary.skipped,
                alerts=len(summary.alerts),
            )
        return summary


trade_ingestion_engine = TradeIngestionEngine()

"""
Position lifecycle for whale activity.

A position is keyed by (wallet, condition_id, outcome_index):

    no record  --BUY, admitted-->        open (alert)
    no record  --BUY, denied-->          open (silent)
    open       --BUY-->                  added
    open/added --SELL-->                 closed (every record, oldest first)
    nothing    --SELL-->                 orphan SELL, stored closed

All mutations for one wallet must run under ``lock_for(wallet_id)`` so
that two sightings of the same key can never both become ``open``.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import (
    ActivityRecord,
    ActivityStatus,
    ActivityType,
    CopyTradePosition,
    TrackedWallet,
)
from models.types import DECIMAL_CONTEXT, DECIMAL_SCALE
from services.copy_trader import CopyTradeConfigError, CopyTradeSimulator, copy_trade_simulator
from services.frequency_controller import FrequencyController, frequency_controller
from utils.logger import get_logger

logger = get_logger("positions")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

ACTIVE_STATUSES = (ActivityStatus.OPEN, ActivityStatus.ADDED)


def _q(value: Decimal) -> Decimal:
    return value.quantize(DECIMAL_SCALE, context=DECIMAL_CONTEXT)


def percent_change(entry: Decimal, exit_: Decimal) -> Optional[Decimal]:
    if entry is None or exit_ is None or entry <= _ZERO:
        return None
    return _q(DECIMAL_CONTEXT.divide((exit_ - entry) * _HUNDRED, entry))


@dataclass
class TrackerOutcome:
    action: str  # opened | added | closed | orphan
    alert: bool
    closed_records: list[ActivityRecord] = field(default_factory=list)
    copy_positions: list[CopyTradePosition] = field(default_factory=list)


class PositionTracker:
    def __init__(
        self,
        admission: Optional[FrequencyController] = None,
        simulator: Optional[CopyTradeSimulator] = None,
    ):
        self.admission = admission or frequency_controller
        self.simulator = simulator or copy_trade_simulator
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, wallet_id: str) -> asyncio.Lock:
        return self._locks[wallet_id]

    async def active_records(
        self,
        session: AsyncSession,
        wallet_id: str,
        condition_id: str,
        outcome_index: Optional[int],
    ) -> list[ActivityRecord]:
        """Open/added BUY records for the key, oldest first."""
        result = await session.execute(
            select(ActivityRecord)
            .where(
                ActivityRecord.wallet_id == wallet_id,
                ActivityRecord.condition_id == condition_id,
                ActivityRecord.outcome_index == outcome_index,
                ActivityRecord.activity_type == ActivityType.BUY,
                ActivityRecord.status.in_(ACTIVE_STATUSES),
            )
            .order_by(ActivityRecord.activity_timestamp.asc(), ActivityRecord.created_at.asc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------ #
    #  BUY
    # ------------------------------------------------------------------ #

    async def record_buy(
        self,
        session: AsyncSession,
        wallet: TrackedWallet,
        record: ActivityRecord,
        meets_threshold: bool = True,
    ) -> TrackerOutcome:
        active = await self.active_records(session, wallet.id, record.condition_id, record.outcome_index)

        if active:
            # Adding to an existing position is not an opening signal, so the
            # admission controller is not consulted.
            record.status = ActivityStatus.ADDED
            alert = settings.ALERT_ON_ADDED_POSITIONS and meets_threshold
            action = "added"
        else:
            admitted = False
            if meets_threshold:
                admitted = await self.admission.admit(session, wallet)
            record.status = ActivityStatus.OPEN
            alert = admitted
            action = "opened"

        record.is_alerted = alert
        session.add(record)
        await session.flush()

        outcome = TrackerOutcome(action=action, alert=alert)
        if wallet.is_copytrade:
            try:
                position = await self.simulator.open_position(session, wallet, record)
            except CopyTradeConfigError as exc:
                # The whale record stands; only the simulation is skipped
                logger.warning(
                    "Copy-trade simulation skipped",
                    wallet=wallet.address,
                    condition_id=record.condition_id,
                    error=str(exc),
                )
            else:
                outcome.copy_positions.append(position)

        logger.info(
            "Position BUY recorded",
            wallet=wallet.address,
            condition_id=record.condition_id,
            outcome_index=record.outcome_index,
            status=record.status.value,
            alert=alert,
        )
        return outcome

    # ------------------------------------------------------------------ #
    #  SELL
    # ------------------------------------------------------------------ #

    async def record_sell(
        self,
        session: AsyncSession,
        wallet: TrackedWallet,
        record: ActivityRecord,
    ) -> TrackerOutcome:
        active = await self.active_records(session, wallet.id, record.condition_id, record.outcome_index)
        record.status = ActivityStatus.CLOSED

        if not active:
            record.is_orphan = True
            record.is_alerted = False
            session.add(record)
            await session.flush()
            logger.warning(
                "Orphan SELL with no open position",
                wallet=wallet.address,
                condition_id=record.condition_id,
                outcome_index=record.outcome_index,
                transaction_hash=record.transaction_hash,
            )
            return TrackerOutcome(action="orphan", alert=False)

        # The SELL's shares are matched to buy-ins oldest first; only matched
        # shares realize P&L, though every active record is closed.
        exit_price = record.price
        unmatched = record.amount
        total_pnl = _ZERO
        total_cost = _ZERO
        for buy in active:
            sold = min(buy.amount, unmatched)
            unmatched -= sold
            pnl = _q((exit_price - buy.price) * sold)
            total_cost += buy.price * sold
            buy.status = ActivityStatus.CLOSED
            buy.realized_outcome = record.outcome
            buy.realized_pnl = pnl
            buy.percent_pnl = percent_change(buy.price, exit_price)
            total_pnl += pnl

        record.realized_outcome = record.outcome
        record.realized_pnl = _q(total_pnl)
        if total_cost > _ZERO:
            record.percent_pnl = _q(DECIMAL_CONTEXT.divide(total_pnl * _HUNDRED, total_cost))
        record.is_alerted = True
        session.add(record)
        await session.flush()

        outcome = TrackerOutcome(action="closed", alert=True, closed_records=active)
        if wallet.is_copytrade:
            outcome.copy_positions = await self.simulator.close_positions(session, wallet, record)

        logger.info(
            "Position closed",
            wallet=wallet.address,
            condition_id=record.condition_id,
            outcome_index=record.outcome_index,
            closed=len(active),
            realized_pnl=str(record.realized_pnl),
        )
        return outcome

    # ------------------------------------------------------------------ #
    #  Repair
    # ------------------------------------------------------------------ #

    async def reconcile_open_duplicates(self, session: AsyncSession) -> int:
        """Keep the oldest ``open`` per key and demote the rest to ``added``.

        Write-time locking keeps this a no-op in normal operation; it exists
        for rows imported from elsewhere.
        """
        result = await session.execute(
            select(ActivityRecord)
            .where(ActivityRecord.status == ActivityStatus.OPEN)
            .order_by(ActivityRecord.activity_timestamp.asc(), ActivityRecord.created_at.asc())
        )
        seen: set[tuple] = set()
        demoted = 0
        for record in result.scalars().all():
            key = record.position_key
            if key in seen:
                record.status = ActivityStatus.ADDED
                demoted += 1
            else:
                seen.add(key)
        if demoted:
            await session.flush()
            logger.warning("Demoted duplicate open records", count=demoted)
        return demoted


position_tracker = PositionTracker()

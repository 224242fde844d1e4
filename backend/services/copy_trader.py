from decimal import Decimal
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import (
    ActivityRecord,
    CopyPositionStatus,
    CopyTradePosition,
    TrackedWallet,
)
from models.types import DECIMAL_CONTEXT, DECIMAL_SCALE, to_decimal
from utils.logger import copytrade_logger as logger
from utils.utcnow import utcnow

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class CopyTradeConfigError(ValueError):
    """The wallet or fill cannot be mirrored (non-positive investment or price)."""


def _q(value: Decimal) -> Decimal:
    return value.quantize(DECIMAL_SCALE, context=DECIMAL_CONTEXT)


def _div(numerator: Decimal, denominator: Decimal) -> Decimal:
    return _q(DECIMAL_CONTEXT.divide(numerator, denominator))


def _mul(a: Decimal, b: Decimal) -> Decimal:
    return _q(DECIMAL_CONTEXT.multiply(a, b))


class CopyTradeSimulator:
    """Mirror whale positions with a fixed notional investment.

    Every BUY from a copy-trade wallet opens one simulated position sized
    ``investment / entry_price`` at the whale's fill price. A SELL on the same
    (condition, outcome) closes open simulated positions oldest-first; each
    SELL sells ``partial_close_percentage`` of a position's remaining shares.

    All quantities are ``Decimal`` quantized to 18 fractional digits so P&L
    reconciles exactly against the stored entry/exit prices.
    """

    async def open_position(
        self,
        session: AsyncSession,
        wallet: TrackedWallet,
        activity: ActivityRecord,
        investment: Optional[Decimal] = None,
    ) -> CopyTradePosition:
        investment = _q(to_decimal(investment if investment is not None else wallet.copytrade_investment))
        entry_price = to_decimal(activity.price)
        if entry_price <= _ZERO or investment <= _ZERO:
            logger.error(
                "Cannot open copy position with non-positive price or investment",
                wallet=wallet.address,
                activity_id=activity.id,
                condition_id=activity.condition_id,
                entry_price=str(entry_price),
                investment=str(investment),
            )
            raise CopyTradeConfigError("entry price and investment must be positive")

        meta = activity.metadata_model
        position = CopyTradePosition(
            wallet_id=wallet.id,
            activity_id=activity.id,
            condition_id=activity.condition_id,
            asset=activity.asset,
            market_name=meta.market,
            market_slug=meta.slug,
            outcome=activity.outcome,
            outcome_index=activity.outcome_index,
            simulated_investment=investment,
            shares_bought=_div(investment, entry_price),
            entry_price=_q(entry_price),
            entry_date=activity.activity_timestamp or utcnow(),
            entry_transaction_hash=activity.transaction_hash,
            status=CopyPositionStatus.OPEN,
        )
        session.add(position)
        await session.flush()

        logger.info(
            "Copy position opened",
            wallet=wallet.address,
            condition_id=position.condition_id,
            outcome_index=position.outcome_index,
            shares=str(position.shares_bought),
            entry_price=str(position.entry_price),
        )
        return position

    async def _open_positions_for_key(
        self,
        session: AsyncSession,
        wallet_id: str,
        condition_id: str,
        outcome_index: Optional[int],
    ) -> list[CopyTradePosition]:
        result = await session.execute(
            select(CopyTradePosition)
            .where(
                CopyTradePosition.wallet_id == wallet_id,
                CopyTradePosition.condition_id == condition_id,
                CopyTradePosition.outcome_index == outcome_index,
                CopyTradePosition.status.in_(
                    [CopyPositionStatus.OPEN, CopyPositionStatus.PARTIALLY_CLOSED]
                ),
            )
            .order_by(CopyTradePosition.entry_date.asc(), CopyTradePosition.created_at.asc())
        )
        return list(result.scalars().all())

    def apply_sell(
        self,
        position: CopyTradePosition,
        exit_price: Decimal,
        shares_to_sell: Decimal,
        *,
        exit_date=None,
        exit_transaction_hash: Optional[str] = None,
        realized_outcome: Optional[str] = None,
    ) -> Decimal:
        """Book a sale of ``shares_to_sell`` at ``exit_price`` and return its P&L."""
        exit_price = _q(to_decimal(exit_price))
        shares_to_sell = min(_q(to_decimal(shares_to_sell)), position.remaining_shares)
        if shares_to_sell <= _ZERO:
            return _ZERO

        pnl = _mul(shares_to_sell, exit_price - position.entry_price)
        previously_sold = position.shares_sold or _ZERO
        total_sold = _q(previously_sold + shares_to_sell)

        # Exit price is the share-weighted average across partial sells.
        if previously_sold > _ZERO and position.exit_price is not None:
            proceeds = _mul(previously_sold, position.exit_price) + _mul(shares_to_sell, exit_price)
            position.exit_price = _div(proceeds, total_sold)
        else:
            position.exit_price = exit_price

        position.shares_sold = total_sold
        position.realized_pnl = _q((position.realized_pnl or _ZERO) + pnl)
        position.percent_pnl = _div(position.realized_pnl * _HUNDRED, position.simulated_investment)
        position.final_value = _q(position.simulated_investment + position.realized_pnl)
        position.exit_date = exit_date or utcnow()
        position.exit_transaction_hash = exit_transaction_hash
        if realized_outcome is not None:
            position.realized_outcome = realized_outcome
        position.status = (
            CopyPositionStatus.CLOSED
            if position.remaining_shares <= _ZERO
            else CopyPositionStatus.PARTIALLY_CLOSED
        )
        return pnl

    async def close_positions(
        self,
        session: AsyncSession,
        wallet: TrackedWallet,
        sell: ActivityRecord,
        close_percentage: Optional[Decimal] = None,
    ) -> list[CopyTradePosition]:
        """Close (or partially close) the wallet's open copy positions for the SELL's key."""
        percentage = to_decimal(
            close_percentage if close_percentage is not None else wallet.partial_close_percentage
        )
        percentage = max(_ZERO, min(_HUNDRED, percentage))
        exit_price = to_decimal(sell.price)

        positions = await self._open_positions_for_key(
            session, wallet.id, sell.condition_id, sell.outcome_index
        )
        if not positions:
            logger.debug(
                "No open copy positions for SELL",
                wallet=wallet.address,
                condition_id=sell.condition_id,
                outcome_index=sell.outcome_index,
            )
            return []

        closed: list[CopyTradePosition] = []
        for position in positions:
            shares = position.remaining_shares
            if percentage < _HUNDRED:
                shares = _div(shares * percentage, _HUNDRED)
            self.apply_sell(
                position,
                exit_price,
                shares,
                exit_date=sell.activity_timestamp,
                exit_transaction_hash=sell.transaction_hash,
                realized_outcome=sell.outcome,
            )
            closed.append(position)
            logger.info(
                "Copy position closed",
                wallet=wallet.address,
                condition_id=position.condition_id,
                status=position.status.value,
                realized_pnl=str(position.realized_pnl),
                percent_pnl=str(position.percent_pnl),
            )

        await session.flush()
        return closed

    def close_position_fully(self, position: CopyTradePosition, sell: ActivityRecord) -> Decimal:
        """Sell every remaining share at the SELL's price, ignoring the wallet's partial-close setting."""
        return self.apply_sell(
            position,
            to_decimal(sell.price),
            position.remaining_shares,
            exit_date=sell.activity_timestamp,
            exit_transaction_hash=sell.transaction_hash,
            realized_outcome=sell.outcome,
        )


copy_trade_simulator = CopyTradeSimulator()

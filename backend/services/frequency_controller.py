"""Per-wallet admission control for opening-trade signals.

Each tracked wallet gets a quota of opening signals per reset period:
``TrackedWallet.frequency`` when set, otherwise the tier default
(1 for free, 3 for paid). The window row is created lazily on the first
check and reset exactly when the clock passes ``reset_time``.

Callers must hold the wallet's lock (see ``PositionTracker.lock_for``);
this class only reads and writes the row inside the caller's session.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import FrequencyWindow, SubscriptionTier, TrackedWallet
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("frequency")


def wallet_quota(wallet: TrackedWallet) -> int:
    if wallet.frequency is not None:
        return max(0, int(wallet.frequency))
    if wallet.subscription_type == SubscriptionTier.PAID:
        return settings.PAID_TIER_FREQUENCY
    return settings.FREE_TIER_FREQUENCY


class FrequencyController:
    def __init__(
        self,
        now: Callable[[], datetime] = utcnow,
        reset_period: Optional[timedelta] = None,
    ):
        self._now = now
        self._reset_period = reset_period

    @property
    def reset_period(self) -> timedelta:
        if self._reset_period is not None:
            return self._reset_period
        return timedelta(hours=settings.FREQUENCY_RESET_HOURS)

    async def _load_window(self, session: AsyncSession, wallet: TrackedWallet, now: datetime) -> FrequencyWindow:
        window = await session.get(FrequencyWindow, wallet.id)
        if window is None:
            window = FrequencyWindow(
                wallet_id=wallet.id,
                remaining_quota=wallet_quota(wallet),
                reset_time=now + self.reset_period,
            )
            session.add(window)
            logger.debug("Created frequency window", wallet=wallet.address, quota=window.remaining_quota)
        elif now >= window.reset_time:
            window.remaining_quota = wallet_quota(wallet)
            window.reset_time = now + self.reset_period
            logger.debug(
                "Frequency window reset",
                wallet=wallet.address,
                quota=window.remaining_quota,
                next_reset=window.reset_time.isoformat(),
            )
        return window

    async def admit(self, session: AsyncSession, wallet: TrackedWallet) -> bool:
        """Consume one opening-signal slot for ``wallet`` if any remain."""
        now = self._now()
        window = await self._load_window(session, wallet, now)

        if window.remaining_quota <= 0:
            await session.flush()
            logger.info(
                "Opening signal denied by frequency limit",
                wallet=wallet.address,
                reset_time=window.reset_time.isoformat(),
            )
            return False

        window.remaining_quota -= 1
        await session.flush()
        return True

    async def peek(self, session: AsyncSession, wallet: TrackedWallet) -> FrequencyWindow:
        """Current window after applying any due reset, without consuming quota."""
        window = await self._load_window(session, wallet, self._now())
        await session.flush()
        return window


frequency_controller = FrequencyController()

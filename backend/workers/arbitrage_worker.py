"""Arbitrage worker: periodic Polymarket/Kalshi catalog matching."""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import dispose_database, init_database
from services.arbitrage_discovery import arbitrage_discovery_engine
from services.kalshi_client import kalshi_client
from services.notifier import ArbitrageAlert, notifier
from services.polymarket import polymarket_client
from utils.logger import arbitrage_logger as logger, setup_logging
from utils.utcnow import utcnow


async def run_cycle() -> int:
    """One discovery run. Newly found pairs are announced; refreshed ones are not."""
    started = utcnow()
    opportunities = await arbitrage_discovery_engine.discover()

    announced = 0
    for opportunity in opportunities:
        if opportunity.created_at is not None and opportunity.created_at >= started:
            notifier.notify(ArbitrageAlert.from_opportunity(opportunity))
            announced += 1

    logger.info(
        "Arbitrage cycle finished",
        stored=len(opportunities),
        announced=announced,
        duration_seconds=round((utcnow() - started).total_seconds(), 1),
    )
    return len(opportunities)


async def _run_loop(stop_event: Optional[asyncio.Event] = None) -> None:
    stop_event = stop_event or asyncio.Event()
    interval = max(60.0, float(settings.ARB_DISCOVERY_INTERVAL_SECONDS))
    logger.info("Arbitrage worker started", interval_seconds=interval)

    while not stop_event.is_set():
        try:
            await run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Arbitrage cycle error", error=str(exc))

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Arbitrage worker stopped")


async def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
    await init_database()
    logger.info("Database initialized")
    await notifier.start()
    try:
        await _run_loop()
    except asyncio.CancelledError:
        logger.info("Arbitrage worker shutting down")
    finally:
        await notifier.stop(drain=True)
        await polymarket_client.close()
        await kalshi_client.close()
        await dispose_database()


if __name__ == "__main__":
    asyncio.run(main())

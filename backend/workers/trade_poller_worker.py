"""Trade poller worker: pulls new fills for every active tracked wallet.

Each tick starts a poll cycle unless the previous one is still running.
Wallets are polled concurrently (bounded by TRADE_POLL_CONCURRENCY); all
writes for one wallet happen in a single locked unit of work.
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Optional

from sqlalchemy import select

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import AsyncSessionLocal, TrackedWallet, dispose_database, init_database
from services.notifier import GainzAlert, WhaleAlert, notifier
from services.polymarket import polymarket_client
from services.trade_ingestion import IngestResult, IngestSummary, trade_ingestion_engine
from utils.logger import poller_logger as logger, setup_logging
from utils.utcnow import utcnow


async def _load_active_wallets() -> list[TrackedWallet]:
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(TrackedWallet).where(TrackedWallet.is_active.is_(True)).order_by(TrackedWallet.created_at)
        )
        return list(result.scalars().all())


def _notify_close(wallet: TrackedWallet, result: IngestResult) -> None:
    """Rewrite the opening alerts of the closed BUYs and send a gainz alert for big wins."""
    for buy in result.closed_records:
        # Only a Discord snowflake can be edited; 204 deliveries left a local ref
        if buy.is_alerted and buy.notification_ref and buy.notification_ref.isdigit():
            notifier.notify(WhaleAlert.from_activity(wallet, buy, "closed", edit_message_id=buy.notification_ref))

    gainz = GainzAlert.from_close(wallet, result.record)
    if gainz is not None:
        notifier.notify(gainz)


async def poll_wallet(wallet: TrackedWallet) -> IngestSummary:
    trades = await polymarket_client.get_wallet_trades(wallet.address, limit=settings.TRADE_POLL_LIMIT)
    summary = await trade_ingestion_engine.ingest_wallet_trades(wallet.id, trades)

    for result in summary.alerts:
        notifier.notify(WhaleAlert.from_activity(wallet, result.record, result.action))
        if result.action == "closed":
            _notify_close(wallet, result)
    return summary


async def run_cycle() -> dict:
    """Poll every active wallet once. A failing wallet never affects the others."""
    started = utcnow()
    wallets = await _load_active_wallets()
    semaphore = asyncio.Semaphore(max(1, settings.TRADE_POLL_CONCURRENCY))

    async def _bounded(wallet: TrackedWallet) -> IngestSummary:
        async with semaphore:
            return await poll_wallet(wallet)

    results = await asyncio.gather(*(_bounded(w) for w in wallets), return_exceptions=True)

    stats = {"wallets": len(wallets), "new": 0, "alerts": 0, "skipped": 0, "failed": 0}
    for wallet, result in zip(wallets, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            stats["failed"] += 1
            logger.error(
                "Wallet poll failed",
                wallet_id=wallet.id,
                wallet=wallet.address,
                error=f"{type(result).__name__}: {result}",
            )
            continue
        stats["new"] += len(result.new_records)
        stats["alerts"] += len(result.alerts)
        stats["skipped"] += result.skipped

    stats["duration_seconds"] = round((utcnow() - started).total_seconds(), 3)
    if stats["new"] or stats["failed"]:
        logger.info("Poll cycle finished", **stats)
    else:
        logger.debug("Poll cycle finished", **stats)
    return stats


async def _guarded_cycle() -> Optional[dict]:
    try:
        return await run_cycle()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("Poll cycle error", error=str(exc))
        return None


async def _run_loop(stop_event: Optional[asyncio.Event] = None) -> None:
    stop_event = stop_event or asyncio.Event()
    interval = max(1.0, float(settings.TRADE_POLL_INTERVAL_SECONDS))
    logger.info("Trade poller started", interval_seconds=interval)

    cycle_task: Optional[asyncio.Task] = None
    while not stop_event.is_set():
        if cycle_task is not None and not cycle_task.done():
            logger.info("Previous poll cycle still running, skipping tick")
        else:
            cycle_task = asyncio.create_task(_guarded_cycle())
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    # Let in-flight writes finish before returning
    if cycle_task is not None and not cycle_task.done():
        logger.info("Waiting for in-flight poll cycle")
        await cycle_task
    logger.info("Trade poller stopped")


async def main() -> None:
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        log_file=settings.LOG_FILE,
        error_log_files={"copytrade": settings.COPYTRADE_ERROR_LOG_FILE},
    )
    await init_database()
    logger.info("Database initialized")
    await notifier.start()
    try:
        await _run_loop()
    except asyncio.CancelledError:
        logger.info("Trade poller shutting down")
    finally:
        await notifier.stop(drain=True)
        await polymarket_client.close()
        await dispose_database()


if __name__ == "__main__":
    asyncio.run(main())

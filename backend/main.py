import asyncio
import signal
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from config import settings
from models.database import dispose_database, init_database
from services.kalshi_client import kalshi_client
from services.notifier import notifier
from services.polymarket import polymarket_client
from utils.logger import setup_logging, get_logger
from workers import arbitrage_worker, trade_poller_worker

# Setup logging
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    log_file=settings.LOG_FILE,
    error_log_files={"copytrade": settings.COPYTRADE_ERROR_LOG_FILE},
)
logger = get_logger("main")


@asynccontextmanager
async def lifespan():
    """Startup and shutdown of shared resources.

    Teardown order matters: the notifier drains first (its delivery task may
    still write notification refs), then HTTP clients close, then the
    database engine goes last.
    """
    logger.info("Starting whale signal backend...")
    try:
        await init_database()
        logger.info("Database initialized")

        await notifier.start()
        logger.info("All services started successfully")

        yield

    except Exception as e:
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    finally:
        logger.info("Shutting down...")
        await notifier.stop(drain=True)
        await polymarket_client.close()
        await kalshi_client.close()
        await dispose_database()
        logger.info("Shutdown complete")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            logger.debug("Signal handlers unavailable", signal=sig.name)


async def run(stop_event: Optional[asyncio.Event] = None) -> None:
    """Run both workers until SIGINT/SIGTERM, then drain and release resources."""
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    async with lifespan():
        tasks = [
            asyncio.create_task(trade_poller_worker._run_loop(stop_event), name="trade_poller"),
            asyncio.create_task(arbitrage_worker._run_loop(stop_event), name="arbitrage"),
        ]
        await stop_event.wait()
        logger.info("Stop requested, waiting for workers to finish their current cycle")

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error("Worker exited with error", worker=task.get_name(), error=str(result))


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()

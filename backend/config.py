import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent.resolve()
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "whales.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # API Base URLs
    GAMMA_API_URL: str = "https://gamma-api.polymarket.com"
    DATA_API_URL: str = "https://data-api.polymarket.com"
    KALSHI_API_URL: str = "https://api.elections.kalshi.com/trade-api/v2"

    # Public site URLs used for links in alerts and opportunity rows
    POLYMARKET_SITE_URL: str = "https://polymarket.com"
    KALSHI_SITE_URL: str = "https://kalshi.com"

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None
    COPYTRADE_ERROR_LOG_FILE: Optional[str] = str(_PROJECT_ROOT / "logs" / "copytrade-error.log")

    # HTTP / retry
    API_TIMEOUT_SECONDS: int = 30
    MAX_RETRY_ATTEMPTS: int = 4
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0

    # Whale trade polling
    TRADE_POLL_INTERVAL_SECONDS: float = 8.0
    TRADE_POLL_LIMIT: int = 50  # Most recent trades fetched per wallet per cycle
    TRADE_POLL_CONCURRENCY: int = 8

    # Frequency admission (opening-trade alerts per wallet per period)
    FREQUENCY_RESET_HOURS: int = 24
    FREE_TIER_FREQUENCY: int = 1
    PAID_TIER_FREQUENCY: int = 3

    # Alerts
    ALERT_ON_ADDED_POSITIONS: bool = True  # Soft alert when a whale adds to an open position
    DISCORD_WEBHOOK_URL: Optional[str] = None
    DISCORD_ARBITRAGE_WEBHOOK_URL: Optional[str] = None
    DISCORD_FREE_WEBHOOK_URL: Optional[str] = None  # Free-tier wallets, ahead of every other route
    DISCORD_WHALE_WEBHOOK_URL: Optional[str] = None  # Wallets whose category is "whale"
    DISCORD_CATEGORY_WEBHOOK_URLS: dict[str, str] = {}  # Paid wallets, keyed by market category (JSON)
    DISCORD_GAINZ_WEBHOOK_URL: Optional[str] = None
    DISCORD_GAINZ_THRESHOLD: float = 50.0  # Min percent P&L on a close for a gainz alert
    NOTIFIER_MAX_MESSAGES_PER_MINUTE: int = 20

    # Copy-trade simulation
    COPYTRADE_DEFAULT_INVESTMENT: float = 500.0

    # Cross-platform arbitrage discovery
    ARB_DISCOVERY_INTERVAL_SECONDS: int = 1800
    ARB_MIN_SIMILARITY: float = 0.3
    ARB_THRESHOLD: float = 100.0  # Summed cents must be strictly below this
    ARB_MIN_LIQUIDITY: float = 100.0
    ARB_DATE_TOLERANCE_DAYS: int = 30
    ARB_UPSERT_BATCH_SIZE: int = 50
    ARB_MAX_CATALOG_PAGES: int = 500  # Hard ceiling against broken pagination cursors
    CATALOG_PAGE_DELAY_SECONDS: float = 0.15
    CATALOG_MAX_CONSECUTIVE_ERRORS: int = 3
    CATALOG_ERROR_BACKOFF_SECONDS: float = 1.0

    @field_validator(
        "GAMMA_API_URL",
        "DATA_API_URL",
        "KALSHI_API_URL",
        "POLYMARKET_SITE_URL",
        "KALSHI_SITE_URL",
        "DISCORD_WEBHOOK_URL",
        "DISCORD_ARBITRAGE_WEBHOOK_URL",
        "DISCORD_FREE_WEBHOOK_URL",
        "DISCORD_WHALE_WEBHOOK_URL",
        "DISCORD_GAINZ_WEBHOOK_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return None
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root so workers
        started from any cwd share one database file."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            try:
                absolute.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _LOGGER.warning(
                    "Could not create SQLite directory",
                    extra={"path": str(absolute.parent), "error": str(exc)},
                )
            return f"{prefix}{absolute}"

        return text

    class Config:
        # Load project-root .env first, then backend/.env as an override.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        validate_default = True


settings = Settings()

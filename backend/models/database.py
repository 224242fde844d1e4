from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Float,
    Text,
    JSON,
    ForeignKey,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from decimal import Decimal
import enum
import logging
import uuid

from config import settings
from models.market import TradeMetadata
from models.types import PreciseDecimal
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


class SubscriptionTier(enum.Enum):
    FREE = "free"
    PAID = "paid"


class ActivityType(enum.Enum):
    BUY = "BUY"
    SELL = "SELL"
    TRANSFER = "TRANSFER"
    SWAP = "SWAP"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    OTHER = "OTHER"


class ActivityStatus(enum.Enum):
    OPEN = "open"
    ADDED = "added"  # Supplementary buy-in layered on the key's open record
    CLOSED = "closed"


class CopyPositionStatus(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    PARTIALLY_CLOSED = "partially_closed"


class ArbitrageDirection(enum.Enum):
    YES_POLY_NO_KALSHI = "yes_poly_no_kalshi"
    NO_POLY_YES_KALSHI = "no_poly_yes_kalshi"


# ==================== TRACKED WALLETS ====================


class TrackedWallet(Base):
    """Whale wallet being tracked. Rows are managed by the admin side."""

    __tablename__ = "tracked_wallets"

    id = Column(String, primary_key=True, default=_new_id)
    address = Column(String, nullable=False, unique=True)
    label = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)

    subscription_type = Column(SQLEnum(SubscriptionTier), nullable=False, default=SubscriptionTier.FREE)
    min_usd_value = Column(PreciseDecimal, nullable=False, default=Decimal("0"))
    frequency = Column(Integer, nullable=True)  # Overrides the tier quota when set

    # Copy-trade simulation
    is_copytrade = Column(Boolean, nullable=False, default=False)
    copytrade_investment = Column(
        PreciseDecimal, nullable=False, default=lambda: Decimal(str(settings.COPYTRADE_DEFAULT_INVESTMENT))
    )
    partial_close_percentage = Column(PreciseDecimal, nullable=False, default=Decimal("100"))

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    frequency_window = relationship("FrequencyWindow", back_populates="wallet", uselist=False)

    @property
    def display_name(self) -> str:
        return self.label or (self.address[:10] + "...")


class FrequencyWindow(Base):
    """Remaining opening-signal quota for a wallet in the current reset period"""

    __tablename__ = "frequency_windows"

    wallet_id = Column(String, ForeignKey("tracked_wallets.id", ondelete="CASCADE"), primary_key=True)
    remaining_quota = Column(Integer, nullable=False, default=0)
    reset_time = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    wallet = relationship("TrackedWallet", back_populates="frequency_window")


# ==================== WHALE ACTIVITY ====================


class ActivityRecord(Base):
    """One observed trade or transfer for a tracked wallet"""

    __tablename__ = "whale_activities"

    id = Column(String, primary_key=True, default=_new_id)
    wallet_id = Column(String, ForeignKey("tracked_wallets.id", ondelete="CASCADE"), nullable=False)

    activity_type = Column(SQLEnum(ActivityType), nullable=False)
    transaction_hash = Column(String, nullable=False)
    condition_id = Column(String, nullable=True)
    asset = Column(String, nullable=False, default="")
    outcome = Column(String, nullable=True)
    outcome_index = Column(Integer, nullable=True)

    amount = Column(PreciseDecimal, nullable=False)
    price = Column(PreciseDecimal, nullable=True)
    usd_value = Column(PreciseDecimal, nullable=True)
    token_symbol = Column(String, nullable=False, default="SHARES")
    blockchain = Column(String, nullable=False, default="POLYGON")
    category = Column(String, nullable=True)
    meta = Column(JSON, nullable=True)

    # Lifecycle (null for transfer-like activity)
    status = Column(SQLEnum(ActivityStatus), nullable=True)
    is_alerted = Column(Boolean, nullable=False, default=False)
    is_orphan = Column(Boolean, nullable=False, default=False)
    realized_outcome = Column(String, nullable=True)
    realized_pnl = Column(PreciseDecimal, nullable=True)
    percent_pnl = Column(PreciseDecimal, nullable=True)
    notification_ref = Column(String, nullable=True)

    activity_timestamp = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    wallet = relationship("TrackedWallet")

    __table_args__ = (
        UniqueConstraint(
            "wallet_id",
            "transaction_hash",
            "asset",
            "activity_type",
            name="uq_activity_fill",
        ),
        Index("idx_activity_position_key", "wallet_id", "condition_id", "outcome_index", "status"),
        Index("idx_activity_timestamp", "activity_timestamp"),
        # At most one OPEN record per (wallet, condition, outcome).
        Index(
            "uq_activity_single_open",
            "wallet_id",
            "condition_id",
            "outcome_index",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    @property
    def metadata_model(self) -> TradeMetadata:
        return TradeMetadata.from_json(self.meta)

    @metadata_model.setter
    def metadata_model(self, value: TradeMetadata) -> None:
        self.meta = value.to_json()

    @property
    def position_key(self) -> tuple:
        return (self.wallet_id, self.condition_id, self.outcome_index)


# ==================== COPY TRADING ====================


class CopyTradePosition(Base):
    """Simulated position mirroring a whale BUY at a fixed investment"""

    __tablename__ = "copytrade_positions"

    id = Column(String, primary_key=True, default=_new_id)
    wallet_id = Column(String, ForeignKey("tracked_wallets.id", ondelete="CASCADE"), nullable=False)
    activity_id = Column(String, ForeignKey("whale_activities.id", ondelete="CASCADE"), nullable=False)

    # Market details
    condition_id = Column(String, nullable=False)
    asset = Column(String, nullable=True)
    market_name = Column(Text, nullable=True)
    market_slug = Column(String, nullable=True)
    outcome = Column(String, nullable=True)
    outcome_index = Column(Integer, nullable=True)
    realized_outcome = Column(String, nullable=True)

    # Entry
    simulated_investment = Column(PreciseDecimal, nullable=False)
    shares_bought = Column(PreciseDecimal, nullable=False)
    entry_price = Column(PreciseDecimal, nullable=False)
    entry_date = Column(DateTime, nullable=False)
    entry_transaction_hash = Column(String, nullable=True)

    # Exit
    exit_price = Column(PreciseDecimal, nullable=True)
    exit_date = Column(DateTime, nullable=True)
    exit_transaction_hash = Column(String, nullable=True)
    shares_sold = Column(PreciseDecimal, nullable=True)

    # PnL
    realized_pnl = Column(PreciseDecimal, nullable=True)
    percent_pnl = Column(PreciseDecimal, nullable=True)
    final_value = Column(PreciseDecimal, nullable=True)

    status = Column(SQLEnum(CopyPositionStatus), nullable=False, default=CopyPositionStatus.OPEN)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    activity = relationship("ActivityRecord")

    __table_args__ = (
        UniqueConstraint("activity_id", name="uq_copytrade_activity"),
        Index("idx_copytrade_key", "wallet_id", "condition_id", "outcome_index", "status"),
    )

    @property
    def remaining_shares(self) -> Decimal:
        return self.shares_bought - (self.shares_sold or Decimal("0"))


# ==================== ARBITRAGE ====================


class ArbitrageOpportunity(Base):
    """Matched Polymarket/Kalshi market pair with its two-way arbitrage margins"""

    __tablename__ = "arbitrage_opportunities"

    id = Column(String, primary_key=True, default=_new_id)

    # Polymarket side
    polymarket_id = Column(String, nullable=False)
    polymarket_question = Column(Text, nullable=False)
    polymarket_slug = Column(String, nullable=True)
    polymarket_condition_id = Column(String, nullable=True)
    polymarket_link = Column(String, nullable=True)
    polymarket_yes_price = Column(Float, nullable=False)
    polymarket_no_price = Column(Float, nullable=False)
    polymarket_liquidity = Column(Float, nullable=True)
    polymarket_end_date = Column(DateTime, nullable=True)

    # Kalshi side (quotes in cents)
    kalshi_ticker = Column(String, nullable=False)
    kalshi_title = Column(Text, nullable=False)
    kalshi_event_ticker = Column(String, nullable=True)
    kalshi_link = Column(String, nullable=True)
    kalshi_yes_bid = Column(Integer, nullable=True)
    kalshi_yes_ask = Column(Integer, nullable=True)
    kalshi_no_bid = Column(Integer, nullable=True)
    kalshi_no_ask = Column(Integer, nullable=True)
    kalshi_liquidity = Column(Float, nullable=True)
    kalshi_close_time = Column(DateTime, nullable=True)

    # Computed
    yes_poly_plus_no_kalshi = Column(Float, nullable=False)
    no_poly_plus_yes_kalshi = Column(Float, nullable=False)
    best_margin = Column(Float, nullable=False)
    arbitrage_type = Column(SQLEnum(ArbitrageDirection), nullable=False)
    similarity_score = Column(Float, nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False)
    match_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("polymarket_id", "kalshi_ticker", name="uq_arbitrage_pair"),
        Index("idx_arbitrage_best_margin", "best_margin"),
    )


# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent access and enforce foreign keys."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


async def init_database():
    """Create any missing tables."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def dispose_database():
    """Release pooled connections. Called last during shutdown."""
    await async_engine.dispose()

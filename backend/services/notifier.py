"""Discord webhook notifier for whale activity and arbitrage opportunities."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

import httpx
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from models.database import (
    ActivityRecord,
    ArbitrageDirection,
    ArbitrageOpportunity,
    AsyncSessionLocal,
    SubscriptionTier,
    TrackedWallet,
)
from models.types import DECIMAL_CONTEXT, DECIMAL_SCALE
from utils.logger import get_logger
from utils.market_urls import build_polymarket_market_url
from utils.utcnow import utcnow

logger = get_logger("notifier")

QUEUE_POLL_SECONDS = 2.0
DRAIN_TIMEOUT_SECONDS = 30.0
MAX_EMBED_FIELD_CHARS = 1024
DEFAULT_RETRY_AFTER_SECONDS = 5.0
WHALE_CATEGORY = "whale"

_COLOR_OPENED = 0x2ECC71
_COLOR_ADDED = 0x3498DB
_COLOR_PROFIT = 0xF1C40F
_COLOR_LOSS = 0xE74C3C
_COLOR_ARBITRAGE = 0x9B59B6
_COLOR_GAINZ = 0x00FF00


def _format_money(value: Optional[Decimal]) -> str:
    if value is None:
        return "n/a"
    return f"${float(value):,.2f}"


def _format_price(value: Optional[Decimal]) -> str:
    if value is None:
        return "n/a"
    return f"{float(value) * 100:.1f}¢"


def _format_pct(value: Optional[Decimal]) -> str:
    if value is None:
        return "n/a"
    return f"{float(value):+.2f}%"


def _field(name: str, value: object, inline: bool = True) -> dict:
    return {"name": name, "value": str(value)[:MAX_EMBED_FIELD_CHARS] or "-", "inline": inline}


def _json_body(resp: httpx.Response) -> Optional[dict]:
    """Response JSON object, or None when the body is empty, HTML or not an object."""
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _retry_after_seconds(resp: httpx.Response) -> float:
    """Discord puts ``retry_after`` in the JSON body; proxies only set the header."""
    body = _json_body(resp) or {}
    for raw in (body.get("retry_after"), resp.headers.get("Retry-After")):
        if raw is None:
            continue
        try:
            return max(0.0, float(raw))
        except (TypeError, ValueError):
            continue
    return DEFAULT_RETRY_AFTER_SECONDS


# ==================== PAYLOADS ====================


class WhaleAlert(BaseModel):
    activity_id: Optional[str] = None
    wallet_label: str
    wallet_address: str
    action: str  # opened | added | closed
    market: Optional[str] = None
    outcome: Optional[str] = None
    price: Optional[Decimal] = None
    usd_value: Optional[Decimal] = None
    category: Optional[str] = None
    status: Optional[str] = None
    realized_pnl: Optional[Decimal] = None
    percent_pnl: Optional[Decimal] = None
    market_url: Optional[str] = None
    occurred_at: Optional[datetime] = None
    # Routing
    subscription_type: Optional[str] = None
    wallet_category: Optional[str] = None
    # Set to rewrite an already delivered message in place
    edit_message_id: Optional[str] = None

    @classmethod
    def from_activity(
        cls,
        wallet: TrackedWallet,
        record: ActivityRecord,
        action: str,
        edit_message_id: Optional[str] = None,
    ) -> "WhaleAlert":
        meta = record.metadata_model
        return cls(
            activity_id=record.id,
            wallet_label=wallet.display_name,
            wallet_address=wallet.address,
            subscription_type=wallet.subscription_type.value if wallet.subscription_type else None,
            wallet_category=wallet.category,
            edit_message_id=edit_message_id,
            action=action,
            market=meta.market,
            outcome=record.outcome,
            price=record.price,
            usd_value=record.usd_value,
            category=record.category,
            status=record.status.value if record.status else None,
            realized_pnl=record.realized_pnl,
            percent_pnl=record.percent_pnl,
            market_url=build_polymarket_market_url(market_slug=meta.slug, event_slug=meta.event_slug),
            occurred_at=record.activity_timestamp,
        )

    def to_discord(self) -> dict:
        if self.action == "closed":
            color = _COLOR_PROFIT if (self.realized_pnl or 0) >= 0 else _COLOR_LOSS
            headline = "Whale closed a position"
        elif self.action == "added":
            color = _COLOR_ADDED
            headline = "Whale added to a position"
        else:
            color = _COLOR_OPENED
            headline = "Whale opened a position"

        fields = [
            _field("Wallet", f"{self.wallet_label} (`{self.wallet_address}`)", inline=False),
            _field("Outcome", self.outcome or "n/a"),
            _field("Price", _format_price(self.price)),
            _field("Value", _format_money(self.usd_value)),
            _field("Category", self.category or "other"),
        ]
        if self.action == "closed":
            fields.append(_field("Realized P&L", _format_money(self.realized_pnl)))
            fields.append(_field("Return", _format_pct(self.percent_pnl)))

        embed = {
            "title": f"{headline}: {self.market or 'unknown market'}"[:256],
            "color": color,
            "fields": fields,
        }
        if self.market_url:
            embed["url"] = self.market_url
        if self.occurred_at:
            embed["timestamp"] = self.occurred_at.isoformat() + "Z"
        return {"embeds": [embed]}


class ArbitrageAlert(BaseModel):
    polymarket_question: str
    kalshi_title: str
    best_margin: float
    direction: str
    similarity_score: float
    polymarket_link: Optional[str] = None
    kalshi_link: Optional[str] = None

    @classmethod
    def from_opportunity(cls, opportunity: ArbitrageOpportunity) -> "ArbitrageAlert":
        return cls(
            polymarket_question=opportunity.polymarket_question,
            kalshi_title=opportunity.kalshi_title,
            best_margin=opportunity.best_margin,
            direction=opportunity.arbitrage_type.value,
            similarity_score=opportunity.similarity_score,
            polymarket_link=opportunity.polymarket_link,
            kalshi_link=opportunity.kalshi_link,
        )

    def to_discord(self) -> dict:
        if self.direction == ArbitrageDirection.YES_POLY_NO_KALSHI.value:
            legs = "Buy YES on Polymarket + NO on Kalshi"
        else:
            legs = "Buy NO on Polymarket + YES on Kalshi"
        links = " | ".join(
            f"[{name}]({url})"
            for name, url in (("Polymarket", self.polymarket_link), ("Kalshi", self.kalshi_link))
            if url
        )
        fields = [
            _field("Polymarket", self.polymarket_question, inline=False),
            _field("Kalshi", self.kalshi_title, inline=False),
            _field("Margin", f"{self.best_margin:.2f}¢"),
            _field("Trade", legs),
            _field("Similarity", f"{self.similarity_score:.2f}"),
        ]
        if links:
            fields.append(_field("Links", links, inline=False))
        return {
            "embeds": [
                {
                    "title": f"Arbitrage: {self.best_margin:.2f}¢ margin"[:256],
                    "color": _COLOR_ARBITRAGE,
                    "fields": fields,
                }
            ]
        }


class GainzAlert(BaseModel):
    wallet_label: str
    wallet_address: str
    market: Optional[str] = None
    outcome: Optional[str] = None
    percent_pnl: Decimal
    realized_pnl: Optional[Decimal] = None
    position_value: Optional[Decimal] = None
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    market_url: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @classmethod
    def from_close(
        cls,
        wallet: TrackedWallet,
        sell: ActivityRecord,
        threshold: Optional[float] = None,
    ) -> Optional["GainzAlert"]:
        """Gainz alert for a closing SELL, or None when its return is under the threshold."""
        threshold = settings.DISCORD_GAINZ_THRESHOLD if threshold is None else threshold
        pct = sell.percent_pnl
        if pct is None or pct < Decimal(str(threshold)) or pct <= Decimal("-100"):
            return None

        # percent_pnl is measured on the matched cost, so this is the
        # share-weighted entry of the shares the SELL closed
        entry = DECIMAL_CONTEXT.divide(sell.price * 100, pct + 100).quantize(DECIMAL_SCALE, context=DECIMAL_CONTEXT)
        meta = sell.metadata_model
        return cls(
            wallet_label=wallet.display_name,
            wallet_address=wallet.address,
            market=meta.market,
            outcome=sell.outcome,
            percent_pnl=pct,
            realized_pnl=sell.realized_pnl,
            position_value=sell.usd_value,
            entry_price=entry,
            exit_price=sell.price,
            market_url=build_polymarket_market_url(market_slug=meta.slug, event_slug=meta.event_slug),
            occurred_at=sell.activity_timestamp,
        )

    def to_discord(self) -> dict:
        market = self.market or "unknown market"
        if self.market_url:
            market = f"[{market}]({self.market_url})"
        fields = [
            _field("Market", market, inline=False),
            _field("Wallet", f"{self.wallet_label} (`{self.wallet_address}`)", inline=False),
            _field("Realized P&L", _format_money(self.realized_pnl)),
            _field("Position value", _format_money(self.position_value)),
            _field("Entry", _format_price(self.entry_price)),
            _field("Exit", _format_price(self.exit_price)),
            _field("Outcome", self.outcome or "n/a"),
        ]
        embed = {
            "title": "Big gains alert",
            "description": f"**{_format_pct(self.percent_pnl)}**",
            "color": _COLOR_GAINZ,
            "fields": fields,
        }
        if self.occurred_at:
            embed["timestamp"] = self.occurred_at.isoformat() + "Z"
        return {"embeds": [embed]}


AlertPayload = Union[WhaleAlert, ArbitrageAlert, GainzAlert]


# ==================== NOTIFIER ====================


class DiscordNotifier:
    """Fire-and-forget Discord webhook delivery.

    ``notify`` only enqueues; a background task drains the queue while
    keeping under ``NOTIFIER_MAX_MESSAGES_PER_MINUTE``. Delivery problems are
    logged and never reach the caller.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        arbitrage_webhook_url: Optional[str] = None,
        max_messages_per_minute: Optional[int] = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._arbitrage_webhook_url = arbitrage_webhook_url
        self._max_per_minute = max_messages_per_minute

        self._send_timestamps: deque[float] = deque()
        self._message_queue: asyncio.Queue[tuple[str, AlertPayload]] = asyncio.Queue()
        self._queue_task: Optional[asyncio.Task] = None
        self._http_client: Optional[httpx.AsyncClient] = None
        self._running = False

    @property
    def webhook_url(self) -> Optional[str]:
        return self._webhook_url or settings.DISCORD_WEBHOOK_URL

    @property
    def arbitrage_webhook_url(self) -> Optional[str]:
        return self._arbitrage_webhook_url or settings.DISCORD_ARBITRAGE_WEBHOOK_URL or self.webhook_url

    @property
    def max_messages_per_minute(self) -> int:
        return self._max_per_minute or settings.NOTIFIER_MAX_MESSAGES_PER_MINUTE

    @property
    def pending(self) -> int:
        return self._message_queue.qsize()

    @property
    def gainz_webhook_url(self) -> Optional[str]:
        # No fallback: gainz alerts are opt-in
        return settings.DISCORD_GAINZ_WEBHOOK_URL

    def _whale_url(self, alert: WhaleAlert) -> Optional[str]:
        """Free-tier channel first, then the whale channel, then per-category for paid wallets."""
        if alert.subscription_type == SubscriptionTier.FREE.value and settings.DISCORD_FREE_WEBHOOK_URL:
            return settings.DISCORD_FREE_WEBHOOK_URL
        if (alert.wallet_category or "").lower() == WHALE_CATEGORY:
            return settings.DISCORD_WHALE_WEBHOOK_URL or self.webhook_url
        if alert.subscription_type == SubscriptionTier.PAID.value:
            by_category = settings.DISCORD_CATEGORY_WEBHOOK_URLS or {}
            return by_category.get((alert.category or "").lower()) or self.webhook_url
        return self.webhook_url

    def _url_for(self, payload: AlertPayload) -> Optional[str]:
        if isinstance(payload, ArbitrageAlert):
            return self.arbitrage_webhook_url
        if isinstance(payload, GainzAlert):
            return self.gainz_webhook_url
        return self._whale_url(payload)

    async def start(self) -> None:
        if self._running:
            logger.warning("Notifier already started")
            return
        if not self.webhook_url:
            logger.info("Discord webhook not configured -- notifier will stay dormant")
        self._http_client = httpx.AsyncClient(timeout=15.0)
        self._running = True
        self._queue_task = asyncio.create_task(self._queue_worker())
        logger.info("Discord notifier started")

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker. With ``drain`` queued messages are delivered first."""
        if drain and self._queue_task and not self._queue_task.done():
            try:
                await asyncio.wait_for(self._message_queue.join(), timeout=DRAIN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Notifier drain timed out", dropped=self.pending)

        self._running = False
        if self._queue_task and not self._queue_task.done():
            self._queue_task.cancel()
            try:
                await self._queue_task
            except asyncio.CancelledError:
                pass
        self._queue_task = None

        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("Discord notifier stopped")

    def notify(self, payload: AlertPayload) -> Optional[str]:
        """Queue ``payload`` for delivery and return a local reference id."""
        try:
            if not self._url_for(payload):
                logger.debug("No Discord webhook configured, dropping alert", kind=type(payload).__name__)
                return None
            ref = uuid.uuid4().hex
            self._message_queue.put_nowait((ref, payload))
            return ref
        except Exception as exc:
            logger.error("Failed to queue notification", error=str(exc))
            return None

    # ------------------------------------------------------------------ #
    #  Delivery
    # ------------------------------------------------------------------ #

    def _can_send_now(self) -> bool:
        now = time.monotonic()
        while self._send_timestamps and self._send_timestamps[0] < now - 60:
            self._send_timestamps.popleft()
        return len(self._send_timestamps) < self.max_messages_per_minute

    def _record_send(self) -> None:
        self._send_timestamps.append(time.monotonic())

    async def _queue_worker(self) -> None:
        while self._running:
            try:
                ref, payload = await asyncio.wait_for(self._message_queue.get(), timeout=QUEUE_POLL_SECONDS)
            except asyncio.TimeoutError:
                continue

            try:
                while not self._can_send_now():
                    await asyncio.sleep(1.0)
                message_id = await self._deliver(ref, payload)
                if (
                    message_id is not None
                    and isinstance(payload, WhaleAlert)
                    and payload.activity_id
                    and not payload.edit_message_id
                ):
                    await self._store_reference(payload.activity_id, message_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Notifier queue worker error", ref=ref, error=str(exc))
            finally:
                self._message_queue.task_done()

    async def _deliver(self, ref: str, payload: AlertPayload) -> Optional[str]:
        """POST one message, or PATCH it when the payload edits an earlier one.

        Returns the Discord message id (or ``ref``) on success. A 429 puts the
        message back on the queue and does not count against the send budget.
        """
        url = self._url_for(payload)
        if not url:
            return None
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=15.0)

        edit_id = payload.edit_message_id if isinstance(payload, WhaleAlert) else None
        try:
            if edit_id:
                resp = await self._http_client.patch(f"{url}/messages/{edit_id}", json=payload.to_discord())
            else:
                resp = await self._http_client.post(url, params={"wait": "true"}, json=payload.to_discord())
        except httpx.TimeoutException:
            logger.warning("Discord webhook timed out", ref=ref)
            return None
        except httpx.HTTPError as exc:
            logger.error("Failed to send Discord message", ref=ref, error=str(exc))
            return None

        if resp.status_code == 429:
            retry_after = _retry_after_seconds(resp)
            logger.warning("Discord rate limited, will retry", ref=ref, retry_after=retry_after)
            await asyncio.sleep(retry_after)
            await self._message_queue.put((ref, payload))
            return None

        self._record_send()
        if resp.status_code in (200, 204):
            body = _json_body(resp) if resp.status_code == 200 else None
            message_id = body.get("id") if body else None
            logger.debug("Discord message sent", ref=ref, message_id=message_id, edited=bool(edit_id))
            return str(message_id or ref)

        logger.warning(
            "Discord webhook error",
            ref=ref,
            status=resp.status_code,
            edit_message_id=edit_id,
            body=resp.text[:300],
        )
        return None

    async def _store_reference(self, activity_id: str, message_id: str) -> None:
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(
                    update(ActivityRecord)
                    .where(ActivityRecord.id == activity_id)
                    .values(notification_ref=message_id, updated_at=utcnow())
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Failed to store notification reference",
                activity_id=activity_id,
                error=str(exc),
            )


notifier = DiscordNotifier()

import asyncio
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from config import settings  # noqa: E402
from models.database import (  # noqa: E402
    ActivityRecord,
    ActivityStatus,
    ActivityType,
    ArbitrageDirection,
    ArbitrageOpportunity,
)
from services.notifier import (  # noqa: E402
    ArbitrageAlert,
    DiscordNotifier,
    GainzAlert,
    WhaleAlert,
    _retry_after_seconds,
)

WEBHOOK = "https://discord.test/api/webhooks/1/main"
ARB_WEBHOOK = "https://discord.test/api/webhooks/2/arb"


class _Recorder:
    """MockTransport handler that replays scripted (status, body) replies; the last one repeats.

    A str body is sent as raw text, anything else as JSON.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        status, body, headers = (*reply, None) if len(reply) == 2 else reply
        if body is None:
            return httpx.Response(status, headers=headers)
        if isinstance(body, str):
            return httpx.Response(status, text=body, headers=headers)
        return httpx.Response(status, json=body)


async def _start(notifier: DiscordNotifier, recorder: _Recorder) -> None:
    await notifier.start()
    await notifier._http_client.aclose()
    notifier._http_client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))


def _whale_alert(**overrides) -> WhaleAlert:
    fields = {
        "activity_id": None,
        "wallet_label": "Whale 1",
        "wallet_address": "0xwhale",
        "action": "opened",
        "market": "Will the Fed cut interest rates in March?",
        "outcome": "Yes",
        "price": Decimal("0.40"),
        "usd_value": Decimal("40"),
        "category": "economic",
        "status": "open",
        "market_url": "https://polymarket.com/market/fed-cut-march",
        "occurred_at": datetime(2026, 1, 1, 12, 0, 0),
    }
    fields.update(overrides)
    return WhaleAlert(**fields)


def test_whale_alert_embed():
    embed = _whale_alert().to_discord()["embeds"][0]

    assert embed["title"] == "Whale opened a position: Will the Fed cut interest rates in March?"
    assert embed["url"] == "https://polymarket.com/market/fed-cut-march"
    assert embed["timestamp"] == "2026-01-01T12:00:00Z"
    values = {f["name"]: f["value"] for f in embed["fields"]}
    assert values["Price"] == "40.0¢"
    assert values["Value"] == "$40.00"
    assert "Realized P&L" not in values

    closed = _whale_alert(action="closed", realized_pnl=Decimal("-12.5"), percent_pnl=Decimal("-31.25"))
    values = {f["name"]: f["value"] for f in closed.to_discord()["embeds"][0]["fields"]}
    assert values["Realized P&L"] == "$-12.50"
    assert values["Return"] == "-31.25%"


def test_arbitrage_alert_from_opportunity():
    opportunity = ArbitrageOpportunity(
        polymarket_question="Will Bitcoin close above $100,000 on December 31?",
        kalshi_title="Bitcoin above $100,000 on December 31?",
        best_margin=2.0,
        arbitrage_type=ArbitrageDirection.NO_POLY_YES_KALSHI,
        similarity_score=0.93,
        polymarket_link="https://polymarket.com/market/bitcoin-above-100k-dec-31",
        kalshi_link=None,
    )
    alert = ArbitrageAlert.from_opportunity(opportunity)
    embed = alert.to_discord()["embeds"][0]

    assert embed["title"] == "Arbitrage: 2.00¢ margin"
    values = {f["name"]: f["value"] for f in embed["fields"]}
    assert values["Trade"] == "Buy NO on Polymarket + YES on Kalshi"
    assert values["Links"] == "[Polymarket](https://polymarket.com/market/bitcoin-above-100k-dec-31)"


def test_notify_without_webhook_is_a_noop(monkeypatch):
    monkeypatch.setattr(settings, "DISCORD_WEBHOOK_URL", None)
    monkeypatch.setattr(settings, "DISCORD_ARBITRAGE_WEBHOOK_URL", None)
    notifier = DiscordNotifier()

    assert notifier.notify(_whale_alert()) is None
    assert notifier.pending == 0


def test_arbitrage_alerts_use_their_own_webhook(monkeypatch):
    monkeypatch.setattr(settings, "DISCORD_ARBITRAGE_WEBHOOK_URL", None)
    notifier = DiscordNotifier(webhook_url=WEBHOOK, arbitrage_webhook_url=ARB_WEBHOOK)
    arb = ArbitrageAlert(
        polymarket_question="q", kalshi_title="t", best_margin=1.0, direction="yes_poly_no_kalshi", similarity_score=0.5
    )
    assert notifier._url_for(arb) == ARB_WEBHOOK
    assert notifier._url_for(_whale_alert()) == WEBHOOK
    # Falls back to the main webhook
    assert DiscordNotifier(webhook_url=WEBHOOK)._url_for(arb) == WEBHOOK


@pytest.mark.asyncio
async def test_stop_drains_queued_messages():
    recorder = _Recorder((204, None))
    notifier = DiscordNotifier(webhook_url=WEBHOOK, max_messages_per_minute=100)
    await _start(notifier, recorder)

    refs = [notifier.notify(_whale_alert(market=f"Market {i}")) for i in range(3)]
    assert all(refs)
    await notifier.stop(drain=True)

    assert len(recorder.requests) == 3
    assert notifier.pending == 0
    assert all(r.url.params["wait"] == "true" for r in recorder.requests)


@pytest.mark.asyncio
async def test_rate_limited_message_is_retried():
    recorder = _Recorder(
        (429, {"retry_after": 0}),
        (200, {"id": "111"}),
    )
    notifier = DiscordNotifier(webhook_url=WEBHOOK, max_messages_per_minute=100)
    await _start(notifier, recorder)

    notifier.notify(_whale_alert())
    await notifier.stop(drain=True)

    assert len(recorder.requests) == 2
    # Only the accepted attempt counts against the per-minute budget
    assert len(notifier._send_timestamps) == 1


@pytest.mark.asyncio
async def test_rate_limit_with_html_body_still_delivers():
    recorder = _Recorder(
        (429, "<html>slow down</html>", {"Retry-After": "0"}),
        (200, {"id": "222"}),
    )
    notifier = DiscordNotifier(webhook_url=WEBHOOK, max_messages_per_minute=100)
    await _start(notifier, recorder)

    notifier.notify(_whale_alert())
    await notifier.stop(drain=True)

    assert len(recorder.requests) == 2
    assert notifier.pending == 0
    assert len(notifier._send_timestamps) == 1


def test_retry_after_reads_body_then_header_then_default():
    assert _retry_after_seconds(httpx.Response(429, json={"retry_after": 0.5})) == 0.5
    assert _retry_after_seconds(httpx.Response(429, text="<html/>", headers={"Retry-After": "2"})) == 2.0
    assert _retry_after_seconds(httpx.Response(429, json={"retry_after": "soon"}, headers={"Retry-After": "3"})) == 3.0
    assert _retry_after_seconds(httpx.Response(429, text="")) == 5.0


def test_whale_alerts_route_by_tier_and_category(monkeypatch):
    monkeypatch.setattr(settings, "DISCORD_FREE_WEBHOOK_URL", "https://discord.test/free")
    monkeypatch.setattr(settings, "DISCORD_WHALE_WEBHOOK_URL", "https://discord.test/whale")
    monkeypatch.setattr(settings, "DISCORD_CATEGORY_WEBHOOK_URLS", {"sports": "https://discord.test/sports"})
    notifier = DiscordNotifier(webhook_url=WEBHOOK)

    # Free tier wins over everything else
    assert notifier._url_for(_whale_alert(subscription_type="free", wallet_category="whale")) == "https://discord.test/free"
    assert notifier._url_for(_whale_alert(subscription_type="paid", wallet_category="Whale")) == "https://discord.test/whale"
    assert notifier._url_for(_whale_alert(subscription_type="paid", category="sports")) == "https://discord.test/sports"
    assert notifier._url_for(_whale_alert(subscription_type="paid", category="crypto")) == WEBHOOK

    monkeypatch.setattr(settings, "DISCORD_FREE_WEBHOOK_URL", None)
    monkeypatch.setattr(settings, "DISCORD_WHALE_WEBHOOK_URL", None)
    # Without their own channels, free and whale wallets use the default
    assert notifier._url_for(_whale_alert(subscription_type="free", category="sports")) == WEBHOOK
    assert notifier._url_for(_whale_alert(subscription_type="paid", wallet_category="whale")) == WEBHOOK


@pytest.mark.asyncio
async def test_edit_alert_patches_the_original_message():
    recorder = _Recorder((200, {"id": "998877"}))
    notifier = DiscordNotifier(webhook_url=WEBHOOK, max_messages_per_minute=100)
    await _start(notifier, recorder)

    notifier.notify(_whale_alert(action="closed", realized_pnl=Decimal("25"), edit_message_id="998877"))
    await notifier.stop(drain=True)

    assert len(recorder.requests) == 1
    request = recorder.requests[0]
    assert request.method == "PATCH"
    assert str(request.url) == f"{WEBHOOK}/messages/998877"


def _closing_sell(percent_pnl: str) -> ActivityRecord:
    record = ActivityRecord(
        activity_type=ActivityType.SELL,
        transaction_hash="0xsell",
        condition_id="0xabc",
        outcome="Yes",
        outcome_index=0,
        amount=Decimal("100"),
        price=Decimal("0.65"),
        usd_value=Decimal("65"),
        status=ActivityStatus.CLOSED,
        realized_pnl=Decimal("25"),
        percent_pnl=Decimal(percent_pnl),
        activity_timestamp=datetime(2026, 1, 1, 14, 0, 0),
        meta={"market": "Will the Fed cut interest rates in March?", "slug": "fed-cut-march"},
    )
    return record


def test_gainz_alert_respects_threshold(monkeypatch):
    monkeypatch.setattr(settings, "DISCORD_GAINZ_THRESHOLD", 50.0)
    wallet = SimpleNamespace(display_name="Whale 1", address="0xwhale")

    assert GainzAlert.from_close(wallet, _closing_sell("49.99")) is None
    assert GainzAlert.from_close(wallet, _closing_sell("62.5"), threshold=70) is None

    alert = GainzAlert.from_close(wallet, _closing_sell("62.5"))
    assert alert.entry_price == Decimal("0.4")
    assert alert.exit_price == Decimal("0.65")
    embed = alert.to_discord()["embeds"][0]
    assert embed["description"] == "**+62.50%**"
    values = {f["name"]: f["value"] for f in embed["fields"]}
    assert values["Entry"] == "40.0¢"
    assert values["Realized P&L"] == "$25.00"
    assert values["Market"] == "[Will the Fed cut interest rates in March?](https://polymarket.com/market/fed-cut-march)"


def test_gainz_alerts_need_their_own_webhook(monkeypatch):
    monkeypatch.setattr(settings, "DISCORD_GAINZ_WEBHOOK_URL", None)
    wallet = SimpleNamespace(display_name="Whale 1", address="0xwhale")
    alert = GainzAlert.from_close(wallet, _closing_sell("80"), threshold=50)

    assert DiscordNotifier(webhook_url=WEBHOOK).notify(alert) is None

    monkeypatch.setattr(settings, "DISCORD_GAINZ_WEBHOOK_URL", "https://discord.test/gainz")
    notifier = DiscordNotifier(webhook_url=WEBHOOK)
    assert notifier._url_for(alert) == "https://discord.test/gainz"
    assert notifier.notify(alert) is not None


@pytest.mark.asyncio
async def test_delivery_errors_never_reach_the_caller():
    def _boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    notifier = DiscordNotifier(webhook_url=WEBHOOK)
    await notifier.start()
    await notifier._http_client.aclose()
    notifier._http_client = httpx.AsyncClient(transport=httpx.MockTransport(_boom))

    assert notifier.notify(_whale_alert()) is not None
    await notifier.stop(drain=True)
    assert notifier.pending == 0


@pytest.mark.asyncio
async def test_delivered_whale_alert_stores_message_id(session_factory, make_wallet):
    async with session_factory() as session:
        wallet = await make_wallet(session)
        record = ActivityRecord(
            wallet_id=wallet.id,
            activity_type=ActivityType.BUY,
            transaction_hash="0xnotify",
            condition_id="0xabc",
            asset="token-yes",
            outcome="Yes",
            outcome_index=0,
            amount=Decimal("100"),
            price=Decimal("0.40"),
            usd_value=Decimal("40"),
            status=ActivityStatus.OPEN,
            is_alerted=True,
            meta={"market": "Will the Fed cut interest rates in March?", "slug": "fed-cut-march"},
        )
        session.add(record)
        await session.commit()
        alert = WhaleAlert.from_activity(wallet, record, "opened")

    assert alert.market_url == "https://polymarket.com/market/fed-cut-march"
    assert alert.status == "open"

    recorder = _Recorder((200, {"id": "998877"}))
    notifier = DiscordNotifier(webhook_url=WEBHOOK)
    await _start(notifier, recorder)
    notifier.notify(alert)
    await notifier.stop(drain=True)

    async with session_factory() as session:
        stored = await session.get(ActivityRecord, record.id)
        assert stored.notification_ref == "998877"


@pytest.mark.asyncio
async def test_notify_is_safe_to_call_before_start():
    notifier = DiscordNotifier(webhook_url=WEBHOOK)
    ref = notifier.notify(_whale_alert())
    assert ref is not None
    assert notifier.pending == 1
    # stop without a running worker returns promptly
    await asyncio.wait_for(notifier.stop(drain=True), timeout=1.0)

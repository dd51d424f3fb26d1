"""
Tests for notification delivery (LogNotifier, WebhookNotifier, NotificationHook).
"""

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from pairbot.monitoring.notifier import (
    LogNotifier,
    NotificationEvent,
    NotificationHook,
    PairEvent,
    WebhookFormatter,
    WebhookNotifier,
)


def _event(kind=NotificationEvent.TP_HIT, **kw):
    defaults = dict(
        event=kind,
        symbol="XAUUSDm",
        pair_id="XAUUSDm-1-abc",
        side="BUY",
        reason="TP_HIT",
        price=2008.01,
        timestamp_ms=1_700_000_000_000,
    )
    defaults.update(kw)
    return PairEvent(**defaults)


class TestPairEvent:

    def test_to_dict(self):
        data = _event(details={"entry_price": 2000.0}).to_dict()
        assert data["event"] == "tp_hit"
        assert data["timestamp_iso"] == "2023-11-14T22:13:20Z"
        assert data["details"] == {"entry_price": 2000.0}

    def test_to_text(self):
        text = _event().to_text()
        assert text.startswith("Take profit hit | XAUUSDm")
        assert "@ 2008.01" in text
        assert "(TP_HIT)" in text

    def test_market_event_text(self):
        text = _event(NotificationEvent.MARKET_FROZEN, pair_id=None, side=None, reason=None, price=None).to_text()
        assert text == "Market frozen | XAUUSDm"


class TestWebhookFormatter:

    def test_telegram(self):
        body = WebhookFormatter.format_telegram(_event(), "42")
        assert body["chat_id"] == "42"
        assert "Take profit hit" in body["text"]

    def test_generic(self):
        assert WebhookFormatter.format_generic(_event(), None)["pair_id"] == "XAUUSDm-1-abc"


class TestWebhookNotifier:

    def _client(self, handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_generic_post(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200)

        async with self._client(handler) as client:
            notifier = WebhookNotifier("https://hooks.example/pairbot", client=client)
            assert await notifier.emit(_event())
        assert seen[0]["event"] == "tp_hit"
        assert seen[0]["symbol"] == "XAUUSDm"

    @pytest.mark.asyncio
    async def test_telegram_post(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        async with self._client(handler) as client:
            notifier = WebhookNotifier("https://api.telegram.org/botX/sendMessage",
                                       webhook_type="telegram", chat_id="42", client=client)
            assert await notifier.emit(_event())
        assert seen[0]["chat_id"] == "42"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        async with self._client(lambda request: httpx.Response(502)) as client:
            notifier = WebhookNotifier("https://hooks.example/pairbot", client=client)
            assert not await notifier.emit(_event())

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with self._client(handler) as client:
            notifier = WebhookNotifier("https://hooks.example/pairbot", client=client)
            assert not await notifier.emit(_event())

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self):
        async with self._client(lambda request: httpx.Response(200)) as client:
            notifier = WebhookNotifier("https://hooks.example/pairbot", client=client)
            await notifier.close()
            assert not client.is_closed

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        notifier = WebhookNotifier("https://hooks.example/pairbot")
        await notifier.close()
        assert notifier.client.is_closed

    def test_unsupported_type(self):
        with pytest.raises(ValueError):
            WebhookNotifier("https://hooks.example/pairbot", webhook_type="slack")


class TestNotificationHook:

    def test_emit_without_loop_records_history(self):
        notifier = AsyncMock()
        hook = NotificationHook(notifier)
        hook.emit(_event())
        assert len(hook.events()) == 1
        notifier.emit.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivers_in_background(self):
        notifier = AsyncMock()
        notifier.emit.return_value = True
        hook = NotificationHook(notifier)
        hook.emit(_event())
        hook.emit(_event(NotificationEvent.SL_HIT))
        await hook.drain()

        assert notifier.emit.await_count == 2
        assert hook.failures == 0
        assert [e.event for e in hook.events(NotificationEvent.SL_HIT)] == [NotificationEvent.SL_HIT]

    @pytest.mark.asyncio
    async def test_failures_counted(self):
        notifier = AsyncMock()
        notifier.emit.side_effect = [False, RuntimeError("boom")]
        hook = NotificationHook(notifier)
        hook.emit(_event())
        hook.emit(_event())
        await hook.drain()
        assert hook.failures == 2

    @pytest.mark.asyncio
    async def test_disabled_keeps_history_only(self):
        notifier = AsyncMock()
        hook = NotificationHook(notifier, enabled=False)
        hook.emit(_event())
        await hook.drain()
        notifier.emit.assert_not_called()
        assert len(hook.history) == 1

    def test_history_bounded(self):
        hook = NotificationHook(history_size=3)
        for _ in range(5):
            hook.emit(_event())
        assert len(hook.history) == 3

    @pytest.mark.asyncio
    async def test_close_drains_and_closes_notifier(self):
        notifier = AsyncMock()
        notifier.emit.return_value = True
        hook = NotificationHook(notifier)
        hook.emit(_event())
        await hook.close()
        notifier.emit.assert_awaited_once()
        notifier.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_log_notifier(self, log_events):
        assert await LogNotifier().emit(_event())
        logged = log_events("notify")
        assert logged[0]["pair_id"] == "XAUUSDm-1-abc"
        assert logged[0]["reason"] == "TP_HIT"

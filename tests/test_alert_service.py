import json
from unittest.mock import patch

import httpx
import pytest

from threadline.services.alert_service import alert_critical, send_alert

from tests.fakes import make_settings


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_returns_false_when_not_configured(self):
        with patch("threadline.services.alert_service.get_settings", return_value=make_settings()):
            assert await send_alert("ERROR", "Test message") is False

    @pytest.mark.asyncio
    async def test_sends_alert_to_telegram(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        transport = httpx.MockTransport(handler)
        real_client = httpx.AsyncClient
        settings = make_settings(alert_bot_token="test-token", alert_chat_id="test-chat")

        with patch("threadline.services.alert_service.get_settings", return_value=settings), patch(
            "threadline.services.alert_service.httpx.AsyncClient",
            side_effect=lambda **kwargs: real_client(transport=transport, **kwargs),
        ):
            sent = await alert_critical("Message send failed", {"target": "+1555"})

        assert sent is True
        assert "api.telegram.org" in str(requests[0].url)
        body = json.loads(requests[0].content)
        assert body["chat_id"] == "test-chat"
        assert "CRITICAL" in body["text"]
        assert "target: +1555" in body["text"]

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = httpx.MockTransport(handler)
        real_client = httpx.AsyncClient
        settings = make_settings(alert_bot_token="test-token", alert_chat_id="test-chat")

        with patch("threadline.services.alert_service.get_settings", return_value=settings), patch(
            "threadline.services.alert_service.httpx.AsyncClient",
            side_effect=lambda **kwargs: real_client(transport=transport, **kwargs),
        ):
            assert await send_alert("ERROR", "boom") is False

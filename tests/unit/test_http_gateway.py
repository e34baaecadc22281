import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from sandcrawler_worker.core.exceptions import OrderValidationError
from sandcrawler_worker.core.http_gateway import HttpGateway

CALLBACK_URL = "https://orchestrator.test/callback"


def make_response(status_code=200):
    request = httpx.Request("POST", CALLBACK_URL)
    return httpx.Response(status_code, request=request, text="" if status_code < 400 else "nope")


class TestHttpGatewayIngress:
    def setup_method(self):
        self.gateway = HttpGateway(CALLBACK_URL, client=MagicMock())

    @pytest.mark.asyncio
    async def test_accept_queues_valid_order(self):
        message = self.gateway.accept({"id": "c1", "body": {"url": "https://example.com"}})

        assert message.call_id == "c1"
        assert self.gateway.queue_size() == 1
        received = await asyncio.wait_for(self.gateway.receive_order(), timeout=1)
        assert received == message

    def test_accept_rejects_invalid_order(self):
        with pytest.raises(OrderValidationError):
            self.gateway.accept({"id": "c1", "body": {"timeout": 10}})

        assert self.gateway.queue_size() == 0


class TestHttpGatewayCallbacks:
    def setup_method(self):
        self.client = MagicMock()
        self.client.post = AsyncMock(return_value=make_response())
        self.gateway = HttpGateway(CALLBACK_URL, api_key="secret-key", client=self.client)

    @pytest.mark.asyncio
    async def test_reply_posts_envelope_with_api_key(self):
        await self.gateway.reply_to("c1", {"data": [1]})

        self.client.post.assert_awaited_once_with(
            CALLBACK_URL,
            json={"type": "reply", "callId": "c1", "payload": {"data": [1]}},
            headers={"Content-Type": "application/json", "X-API-Key": "secret-key"},
        )

    @pytest.mark.asyncio
    async def test_publish_posts_event(self):
        await self.gateway.publish("page:error", {"data": {"message": "boom"}, "callId": "c1"})

        _, kwargs = self.client.post.call_args
        assert kwargs["json"] == {"topic": "page:error", "payload": {"data": {"message": "boom"}, "callId": "c1"}}

    @pytest.mark.asyncio
    async def test_rejected_callback_is_logged(self, caplog):
        self.client.post.return_value = make_response(500)

        with caplog.at_level(logging.WARNING):
            await self.gateway.reply_to("c1", {"data": None})

        assert "Callback rejected reply: 500" in caplog.text

    @pytest.mark.asyncio
    async def test_transport_error_is_logged(self, caplog):
        self.client.post.side_effect = httpx.ConnectError("connection refused")

        with caplog.at_level(logging.WARNING):
            await self.gateway.publish("page:log", {"data": {}, "callId": "c1"})

        assert "Callback failed for page:log" in caplog.text

    @pytest.mark.asyncio
    async def test_no_callback_url_drops_messages(self):
        gateway = HttpGateway("", client=self.client)

        await gateway.reply_to("c1", {"data": 1})

        self.client.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_aclose_closes_client(self):
        self.client.aclose = AsyncMock()

        await self.gateway.aclose()

        self.client.aclose.assert_awaited_once()

"""
Unit tests for the message gateway protocol and the in-process transport.
"""

import asyncio
import logging

import pytest

from sandcrawler_worker.core.gateway import (
    InboundOrderQueue,
    MessageGateway,
    QueueGateway,
    event_message,
    reply_message,
)
from sandcrawler_worker.core.http_gateway import HttpGateway
from sandcrawler_worker.core.realtime_gateway import RealtimeGateway


def test_transports_implement_protocol():
    assert isinstance(QueueGateway(), MessageGateway)
    assert isinstance(HttpGateway("https://orchestrator.test/callback"), MessageGateway)
    assert isinstance(RealtimeGateway("https://test.supabase.co", "key", "runner-1"), MessageGateway)


def test_envelopes():
    assert reply_message("c1", {"data": 1}) == {"type": "reply", "callId": "c1", "payload": {"data": 1}}
    assert event_message("page:log", {"data": {}, "callId": "c1"}) == {
        "topic": "page:log",
        "payload": {"data": {}, "callId": "c1"},
    }


class TestInboundOrderQueue:
    @pytest.mark.asyncio
    async def test_malformed_messages_are_dropped(self, caplog):
        queue = InboundOrderQueue(name="test")
        queue.put_nowait("garbage")
        queue.put_nowait({"id": "bad", "body": {}})
        queue.put_nowait({"id": "good", "body": {"url": "https://example.com"}})

        with caplog.at_level(logging.WARNING):
            message = await asyncio.wait_for(queue.receive(), timeout=1)

        assert message.call_id == "good"
        assert queue.qsize() == 0
        assert sum("Dropping malformed order" in r.getMessage() for r in caplog.records) == 2


class TestQueueGateway:
    def setup_method(self):
        self.gateway = QueueGateway()

    @pytest.mark.asyncio
    async def test_submit_and_receive(self):
        self.gateway.submit({"id": "c1", "body": {"url": "https://example.com"}})

        assert self.gateway.pending_orders() == 1
        message = await self.gateway.receive_order()

        assert message.call_id == "c1"
        assert self.gateway.pending_orders() == 0

    @pytest.mark.asyncio
    async def test_outbox_keeps_send_order(self):
        await self.gateway.publish("page:log", {"data": {"message": "a"}, "callId": "c1"})
        await self.gateway.reply_to("c1", {"data": 1})

        assert self.gateway.drain() == [
            {"topic": "page:log", "payload": {"data": {"message": "a"}, "callId": "c1"}},
            {"type": "reply", "callId": "c1", "payload": {"data": 1}},
        ]
        assert self.gateway.drain() == []

"""
Message Gateway

The channel between the worker and its orchestrator:
- receive_order: next inbound order message
- reply_to: one addressed reply per call id
- publish: fire-and-forget page events

Transports implement MessageGateway. QueueGateway keeps everything in
process on asyncio queues; see realtime_gateway and http_gateway for the
networked ones.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

from sandcrawler_worker.core.exceptions import OrderValidationError
from sandcrawler_worker.core.models import OrderMessage, parse_order_message

logger = logging.getLogger(__name__)

# Event topics
TOPIC_PAGE_LOG = "page:log"
TOPIC_PAGE_ERROR = "page:error"
TOPIC_PAGE_ALERT = "page:alert"
TOPIC_PAGE_NAVIGATION = "page:navigation"

PAGE_TOPICS = (TOPIC_PAGE_LOG, TOPIC_PAGE_ERROR, TOPIC_PAGE_ALERT, TOPIC_PAGE_NAVIGATION)


@runtime_checkable
class MessageGateway(Protocol):
    """Request/reply + publish channel to the orchestrator."""

    async def receive_order(self) -> OrderMessage: ...

    async def reply_to(self, call_id: str, payload: dict[str, Any]) -> None: ...

    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


def reply_message(call_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Outbound reply envelope."""
    return {"type": "reply", "callId": call_id, "payload": payload}


def event_message(topic: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Outbound event envelope."""
    return {"topic": topic, "payload": payload}


class InboundOrderQueue:
    """
    Validating inbound queue shared by the transports.

    Raw messages are parsed as they are pulled; malformed ones are logged
    and skipped so receive() only ever yields well-formed orders.
    """

    def __init__(self, name: str = "gateway") -> None:
        self.name = name
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def put_nowait(self, raw: Any) -> None:
        self._queue.put_nowait(raw)

    async def put(self, raw: Any) -> None:
        await self._queue.put(raw)

    async def receive(self) -> OrderMessage:
        while True:
            raw = await self._queue.get()
            try:
                return parse_order_message(raw)
            except OrderValidationError as e:
                logger.warning(
                    f"[{self.name}] Dropping malformed order: {e}",
                    extra={"call_id": e.call_id, "validation_errors": e.validation_errors},
                )

    def qsize(self) -> int:
        return self._queue.qsize()


class QueueGateway:
    """
    In-process gateway backed by asyncio queues.

    Raw order messages are fed with submit(); replies and events are placed
    on the outbox as protocol envelopes, in the order they were sent.
    """

    def __init__(self) -> None:
        self._inbound = InboundOrderQueue(name="Queue Gateway")
        self.outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def submit(self, raw: Any) -> None:
        """Enqueue a raw ``{"id", "body"}`` order message."""
        self._inbound.put_nowait(raw)

    async def receive_order(self) -> OrderMessage:
        return await self._inbound.receive()

    async def reply_to(self, call_id: str, payload: dict[str, Any]) -> None:
        await self.outbox.put(reply_message(call_id, payload))
        logger.debug(f"[Queue Gateway] Reply queued for {call_id}", extra={"call_id": call_id})

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        await self.outbox.put(event_message(topic, payload))

    def drain(self) -> list[dict[str, Any]]:
        """Return and clear everything sent so far."""
        messages = []
        while not self.outbox.empty():
            messages.append(self.outbox.get_nowait())
        return messages

    def pending_orders(self) -> int:
        return self._inbound.qsize()

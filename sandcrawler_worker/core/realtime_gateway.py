"""
Supabase Realtime gateway for scrape orders.

Features:
- Receive orders broadcast on the order channel (event "order")
- Send replies addressed by call id (event "reply")
- Publish page events with the topic as event name
- Broadcast worker status (starting, stopping) to the orchestrator
- Connection watch that reconnects with exponential backoff when the socket drops
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from realtime import AsyncRealtimeClient

from sandcrawler_worker.core.exceptions import GatewayError
from sandcrawler_worker.core.gateway import InboundOrderQueue, reply_message
from sandcrawler_worker.core.models import OrderMessage

logger = logging.getLogger(__name__)

# Reconnection configuration
RECONNECT_DELAYS = [1, 2, 4, 8, 16, 32]
WATCH_INTERVAL = 5.0

# Broadcast event names
EVENT_ORDER = "order"
EVENT_REPLY = "reply"
EVENT_WORKER_STATUS = "worker_status"


class RealtimeGateway:
    """
    Message gateway over a Supabase Realtime broadcast channel.

    All sends are best-effort: failures are logged and never retried, and
    sending while disconnected is a no-op.
    """

    RECONNECT_DELAYS = RECONNECT_DELAYS
    WATCH_INTERVAL = WATCH_INTERVAL

    def __init__(
        self,
        supabase_url: str,
        realtime_key: str,
        runner_name: str,
        channel_name: str = "sandcrawler-orders",
    ):
        """
        Initialize the RealtimeGateway.

        Args:
            supabase_url: Full Supabase project URL (e.g., https://xyz.supabase.co)
            realtime_key: Supabase anon or service key
            runner_name: Unique identifier for this worker instance
            channel_name: Broadcast channel shared with the orchestrator
        """
        self.supabase_url = supabase_url
        self.realtime_key = realtime_key
        self.runner_name = runner_name
        self.channel_name = channel_name

        self.client: AsyncRealtimeClient | None = None
        self._channel = None
        self._connected = False
        self._watch_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()
        self._inbound = InboundOrderQueue(name=f"Realtime Gateway:{runner_name}")

    @property
    def is_connected(self) -> bool:
        """Check if the WebSocket connection is active."""
        return self._connected

    async def connect(self) -> bool:
        """
        Connect to Supabase Realtime and subscribe to the order channel.

        Returns:
            True if connection successful, False otherwise
        """
        await self._drop_client()

        try:
            # Reconnection is driven by the connection watch, not the client
            self.client = AsyncRealtimeClient(
                f"{self.supabase_url.rstrip('/')}/realtime/v1",
                self.realtime_key,
                auto_reconnect=False,
            )
            await self.client.connect()

            self._channel = self.client.channel(self.channel_name)
            self._channel.on_broadcast(EVENT_ORDER, self._handle_order_broadcast)
            await self._channel.subscribe()

            self._connected = True
            logger.info(
                f"[{self.runner_name}] Subscribed to order channel {self.channel_name}",
                extra={"runner_name": self.runner_name},
            )
            return True

        except Exception as e:
            logger.error(
                f"[{self.runner_name}] Failed to connect to Supabase Realtime: {e}",
                extra={"runner_name": self.runner_name},
            )
            self._connected = False
            return False

    async def disconnect(self) -> None:
        """Stop reconnection and close the channel and client."""
        logger.info(f"[{self.runner_name}] Disconnecting from Supabase Realtime...")

        self._shutdown_event.set()

        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass

        if self._channel is not None and self._connected:
            try:
                await self._channel.unsubscribe()
            except Exception as e:
                logger.warning(f"[{self.runner_name}] Failed to unsubscribe from {self.channel_name}: {e}")

        await self._drop_client()
        logger.info(f"[{self.runner_name}] Disconnected from Supabase Realtime")

    async def _drop_client(self) -> None:
        """Close the current client, if any, so a new one can replace it."""
        self._connected = False
        self._channel = None

        client, self.client = self.client, None
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.debug(f"[{self.runner_name}] Closing stale realtime client failed: {e}")

    def _handle_order_broadcast(self, message: dict[str, Any]) -> None:
        """Queue an inbound order; validation happens when it is received."""
        raw = message.get("payload", message) if isinstance(message, dict) else message
        self._inbound.put_nowait(raw)
        call_id = raw.get("id") if isinstance(raw, dict) else None
        logger.debug(f"[{self.runner_name}] Queued order {call_id}", extra={"call_id": call_id})

    async def receive_order(self) -> OrderMessage:
        return await self._inbound.receive()

    async def _send(self, event: str, payload: dict[str, Any]) -> None:
        if not self._channel or not self._connected:
            logger.debug(f"[{self.runner_name}] Not connected, dropping {event} message")
            return

        try:
            await self._channel.send_broadcast(event, payload)
        except Exception as e:
            error = GatewayError(f"Failed to broadcast {event}: {e}", topic=event, original_error=e)
            logger.warning(f"[{self.runner_name}] {error}")

    async def reply_to(self, call_id: str, payload: dict[str, Any]) -> None:
        await self._send(EVENT_REPLY, reply_message(call_id, payload))
        logger.debug(f"[{self.runner_name}] Reply sent for {call_id}", extra={"call_id": call_id})

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        await self._send(topic, payload)

    async def broadcast_runner_status(
        self,
        status: str,
        details: dict | None = None,
    ) -> None:
        """
        Broadcast worker status update (e.g., starting, stopping, error).

        Args:
            status: Status string (starting, stopping, error, idle)
            details: Optional additional details
        """
        await self._send(
            EVENT_WORKER_STATUS,
            {
                "runner_name": self.runner_name,
                "status": status,
                "details": details or {},
                "timestamp": time.time(),
            },
        )
        logger.debug(f"[{self.runner_name}] Broadcast worker status: {status}")

    def _client_alive(self) -> bool:
        return self._connected and self.client is not None and bool(self.client.is_connected)

    async def reconnect(self) -> bool:
        """
        Rebuild the client and resubscribe, backing off between attempts.

        Returns:
            True once resubscribed, False if shut down or out of attempts
        """
        attempts = len(self.RECONNECT_DELAYS)
        for attempt, delay in enumerate(self.RECONNECT_DELAYS, start=1):
            if self._shutdown_event.is_set():
                return False

            logger.info(
                f"[{self.runner_name}] Order channel down, reconnecting in {delay}s ({attempt}/{attempts})",
                extra={"runner_name": self.runner_name},
            )
            await asyncio.sleep(delay)

            if self._shutdown_event.is_set():
                return False
            if await self.connect():
                return True

        logger.error(
            f"[{self.runner_name}] Could not resubscribe after {attempts} attempts",
            extra={"runner_name": self.runner_name},
        )
        return False

    async def _watch_connection(self) -> None:
        """Poll the socket and reconnect whenever it has dropped."""
        while not self._shutdown_event.is_set():
            await asyncio.sleep(self.WATCH_INTERVAL)
            if self._shutdown_event.is_set() or self._client_alive():
                continue

            logger.warning(f"[{self.runner_name}] Lost Supabase Realtime connection", extra={"runner_name": self.runner_name})
            self._connected = False
            await self.reconnect()

    def start_connection_watch(self) -> None:
        """Start watching the connection in the background."""
        if self._watch_task and not self._watch_task.done():
            return
        self._watch_task = asyncio.create_task(self._watch_connection())

    def queue_size(self) -> int:
        """Return the current number of orders waiting to be picked up."""
        return self._inbound.qsize()

"""
HTTP gateway for scrape orders.

Orders are pushed to the worker's ingress (see sandcrawler_worker.api.server);
replies and page events are POSTed back to the orchestrator's callback URL
as protocol envelopes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from sandcrawler_worker.core.exceptions import GatewayError
from sandcrawler_worker.core.gateway import event_message, reply_message
from sandcrawler_worker.core.models import OrderMessage, parse_order_message

logger = logging.getLogger(__name__)


class HttpGateway:
    """
    Message gateway with an HTTP ingress and an httpx callback egress.

    Handles:
    - Validating orders as they are accepted (bad ones never get queued)
    - Replying and publishing to a single callback endpoint
    - Optional X-API-Key authentication on callbacks
    """

    def __init__(
        self,
        callback_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.callback_url = callback_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._orders: asyncio.Queue[OrderMessage] = asyncio.Queue()

        if not self.callback_url:
            logger.warning("CALLBACK_URL not configured, replies will be dropped")

    def accept(self, raw: Any) -> OrderMessage:
        """
        Validate and queue an order pushed to the ingress.

        Raises:
            OrderValidationError: If the message is not a well-formed order
        """
        message = parse_order_message(raw)
        self._orders.put_nowait(message)
        logger.info(f"[HTTP Gateway] Accepted order {message.call_id}", extra={"call_id": message.call_id})
        return message

    async def receive_order(self) -> OrderMessage:
        return await self._orders.get()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _post(self, message: dict[str, Any], label: str) -> bool:
        if not self.callback_url:
            return False

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            response = await self._get_client().post(self.callback_url, json=message, headers=headers)
            response.raise_for_status()
            return True
        except httpx.HTTPStatusError as e:
            error = GatewayError(
                f"Callback rejected {label}: {e.response.status_code} - {e.response.text}",
                topic=label,
                original_error=e,
            )
        except httpx.HTTPError as e:
            error = GatewayError(f"Callback failed for {label}: {e}", topic=label, original_error=e)

        logger.warning(f"[HTTP Gateway] {error}")
        return False

    async def reply_to(self, call_id: str, payload: dict[str, Any]) -> None:
        if await self._post(reply_message(call_id, payload), label="reply"):
            logger.debug(f"[HTTP Gateway] Reply delivered for {call_id}", extra={"call_id": call_id})

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        await self._post(event_message(topic, payload), label=topic)

    def queue_size(self) -> int:
        return self._orders.qsize()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

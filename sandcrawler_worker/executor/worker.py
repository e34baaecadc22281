"""
Scrape worker: pulls orders off a gateway and runs each in its own page.

Features:
- Bounded concurrency (MAX_PAGES open pages; queued orders wait for a slot)
- One PageSession per call id; duplicates of in-flight or recently finished
  call ids are dropped
- Page-initiated exit requests stop the worker with the requested code
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable

from sandcrawler_worker.core.gateway import MessageGateway
from sandcrawler_worker.core.models import OrderMessage
from sandcrawler_worker.executor.page_session import PageSession

logger = logging.getLogger(__name__)

# Finished call ids remembered for duplicate detection
COMPLETED_IDS_LIMIT = 1000


class ScrapeWorker:
    """Dispatches inbound orders to page sessions."""

    def __init__(
        self,
        gateway: MessageGateway,
        page_factory: Callable[[dict[str, Any]], Awaitable[Any]],
        max_pages: int = 4,
        default_settings: dict[str, Any] | None = None,
        bundles: dict[str, str] | None = None,
        default_timeout_ms: int | None = None,
        runner_name: str = "sandcrawler-worker",
    ):
        self.gateway = gateway
        self.page_factory = page_factory
        self.max_pages = max(1, max_pages)
        self.default_settings = default_settings or {}
        self.bundles = bundles or {}
        self.default_timeout_ms = default_timeout_ms
        self.runner_name = runner_name

        self.sessions: dict[str, PageSession] = {}
        self._completed: OrderedDict[str, None] = OrderedDict()
        self.exit_code: int | None = None
        self.orders_handled = 0

        self._slots = asyncio.Semaphore(self.max_pages)
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self.sessions)

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()

    def _with_default_timeout(self, message: OrderMessage) -> OrderMessage:
        if not self.default_timeout_ms or "timeout" in message.order.model_fields_set:
            return message
        order = message.order.model_copy(update={"timeout": self.default_timeout_ms})
        return message.model_copy(update={"order": order})

    async def handle_order(self, message: OrderMessage) -> PageSession | None:
        """
        Run one order to completion.

        Waits for a free page slot first, so the order's timeout only starts
        counting once its page is being opened.

        Returns:
            The finished session, or None if the order was dropped
        """
        call_id = message.call_id
        if call_id in self.sessions:
            logger.warning(
                f"[Worker] Order {call_id} is already in flight, dropping duplicate",
                extra={"call_id": call_id, "runner_name": self.runner_name},
            )
            return None
        if call_id in self._completed:
            logger.warning(
                f"[Worker] Order {call_id} already finished, dropping duplicate",
                extra={"call_id": call_id, "runner_name": self.runner_name},
            )
            return None

        session = PageSession(
            self._with_default_timeout(message),
            self.gateway,
            self.page_factory,
            default_settings=self.default_settings,
            bundles=self.bundles,
            on_exit=self.request_exit,
        )
        self.sessions[call_id] = session

        try:
            async with self._slots:
                if self.is_stopping:
                    logger.info(f"[Worker] Worker stopping, order {call_id} not started", extra={"call_id": call_id})
                    return None

                await session.start()
                await session.wait_closed()
                self._remember_completed(call_id)
        finally:
            await session.cleanup()
            self.sessions.pop(call_id, None)

        self.orders_handled += 1
        return session

    def _remember_completed(self, call_id: str) -> None:
        self._completed[call_id] = None
        self._completed.move_to_end(call_id)
        while len(self._completed) > COMPLETED_IDS_LIMIT:
            self._completed.popitem(last=False)

    def dispatch(self, message: OrderMessage) -> asyncio.Task:
        """Run an order in the background."""
        task = asyncio.create_task(self.handle_order(message))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Worker] Order task failed: {exc}", exc_info=exc, extra={"runner_name": self.runner_name})

    def request_exit(self, code: int = 0) -> None:
        """Called by a page session that asked the worker to exit."""
        if self.exit_code is None:
            self.exit_code = code
        logger.info(f"[Worker] Exit requested with code {code}", extra={"runner_name": self.runner_name})
        self._stop_event.set()

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> int:
        """
        Receive and dispatch orders until stopped.

        Returns:
            Exit code requested by a page, or 0
        """
        logger.info(
            f"[Worker] {self.runner_name} accepting orders (max {self.max_pages} pages)",
            extra={"runner_name": self.runner_name},
        )
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            while not self.is_stopping:
                receiver = asyncio.create_task(self.gateway.receive_order())
                done, _ = await asyncio.wait({receiver, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)

                if receiver in done:
                    message = receiver.result()
                    logger.info(
                        f"[Worker] Received order {message.call_id} for {message.order.url}",
                        extra={"call_id": message.call_id, "url": message.order.url},
                    )
                    self.dispatch(message)
                else:
                    receiver.cancel()
                    try:
                        await receiver
                    except asyncio.CancelledError:
                        pass
        finally:
            stop_waiter.cancel()
            await self.shutdown()

        return self.exit_code or 0

    async def shutdown(self) -> None:
        """Release every open page and wait for order tasks to finish."""
        self._stop_event.set()

        sessions = list(self.sessions.values())
        if sessions:
            logger.info(f"[Worker] Closing {len(sessions)} open page(s)", extra={"runner_name": self.runner_name})
        for session in sessions:
            await session.cleanup()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info(
            f"[Worker] Stopped after {self.orders_handled} order(s)",
            extra={"runner_name": self.runner_name},
        )

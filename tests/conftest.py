"""Pytest configuration and fixtures."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from sandcrawler_worker.core.gateway import QueueGateway
from sandcrawler_worker.core.models import SIGNAL_PASSPHRASE, parse_order_message
from sandcrawler_worker.executor.page_scripts import (
    ARTOO_SETTINGS_SCRIPT,
    ASYNC_EVALUATE_SCRIPT,
    JQUERY_NO_CONFLICT_SCRIPT,
    READY_POLL_SCRIPT,
    SIGNAL_BINDING,
)

INTERNAL_SCRIPTS = (READY_POLL_SCRIPT, JQUERY_NO_CONFLICT_SCRIPT, ARTOO_SETTINGS_SCRIPT, ASYNC_EVALUATE_SCRIPT)


def signal(head: str, body: Any = None, passphrase: str = SIGNAL_PASSPHRASE) -> dict[str, Any]:
    return {"head": head, "body": body, "passphrase": passphrase}


class FakePage:
    """
    Stand-in for a Playwright page.

    goto() reports a response for the requested URL with the configured
    status (or hangs until the context is closed when hang=True). When
    auto_ready is set the page signals documentReady as soon as the
    readiness poll is installed, and sends async_signal once the order's
    script is started.
    """

    def __init__(
        self,
        status: int | None = 200,
        headers: dict[str, str] | None = None,
        script_result: Any = None,
        script_error: str | None = None,
        goto_error: str | None = None,
        request_error: str | None = None,
        hang: bool = False,
        auto_ready: bool = False,
        async_signal: dict[str, Any] | None = None,
    ):
        self.status = status
        self.headers = headers or {"content-type": "text/html"}
        self.script_result = script_result
        self.script_error = script_error
        self.goto_error = goto_error
        self.request_error = request_error
        self.hang = hang
        self.auto_ready = auto_ready
        self.async_signal = async_signal

        self.handlers: dict[str, Any] = {}
        self.bindings: dict[str, Any] = {}
        self.main_frame = MagicMock(name="main_frame")
        self._gone = asyncio.Event()

        self.context = MagicMock()
        self.context.close = AsyncMock(side_effect=self._close)
        self.goto = AsyncMock(side_effect=self._goto)
        self.evaluate = AsyncMock(side_effect=self._evaluate)
        self.add_script_tag = AsyncMock()
        self.route = AsyncMock()

    async def _close(self) -> None:
        self._gone.set()

    async def expose_function(self, name: str, callback: Any) -> None:
        self.bindings[name] = callback

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event] = handler

    def emit_response(self, url: str, status: int | None, headers: dict[str, str] | None = None) -> None:
        self.handlers["response"](MagicMock(url=url, status=status, headers=headers or self.headers))

    def emit_request_failed(self, url: str, failure: str) -> None:
        self.handlers["requestfailed"](MagicMock(url=url, failure=failure))

    def send_signal(self, raw: Any) -> None:
        self.bindings[SIGNAL_BINDING](raw)

    async def _goto(self, url: str, **kwargs: Any) -> None:
        if self.hang:
            await self._gone.wait()
            raise PlaywrightError("Target page, context or browser has been closed")
        if self.goto_error:
            if self.request_error:
                self.emit_request_failed(url, self.request_error)
            raise PlaywrightError(self.goto_error)
        if self.status is not None:
            self.emit_response(url, self.status)

    async def _evaluate(self, expression: str, arg: Any = None) -> Any:
        if self._gone.is_set():
            raise PlaywrightError("Target page, context or browser has been closed")
        if expression == READY_POLL_SCRIPT and self.auto_ready:
            self.send_signal(signal("documentReady", True))
        if expression == ASYNC_EVALUATE_SCRIPT and self.async_signal is not None:
            self.send_signal(self.async_signal)
        if expression in INTERNAL_SCRIPTS:
            return None
        if self.script_error:
            raise PlaywrightError(self.script_error)
        return self.script_result


@pytest.fixture
def make_message():
    """Build a validated order message from order fields."""

    def _make(call_id: str = "call-1", **order: Any):
        order.setdefault("url", "https://example.com/")
        return parse_order_message({"id": call_id, "body": order})

    return _make


@pytest.fixture
def queue_gateway():
    return QueueGateway()


@pytest.fixture
def page_factory():
    """Factory handing out FakePage instances; configure via .page_kwargs."""
    pages: list[FakePage] = []
    settings_seen: list[dict[str, Any]] = []

    async def _factory(page_settings: dict[str, Any]) -> FakePage:
        settings_seen.append(page_settings)
        page = FakePage(**_factory.page_kwargs)
        pages.append(page)
        return page

    _factory.page_kwargs = {}
    _factory.pages = pages
    _factory.settings_seen = settings_seen
    return _factory

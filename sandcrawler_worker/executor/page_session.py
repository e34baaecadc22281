"""
Page lifecycle controller for a single scrape order.

A PageSession owns one browser page for the lifetime of one order. It turns
the page's unordered callbacks (responses, load completion, console output,
in-page signals, navigation attempts, errors) into a single lifecycle:

    created -> opening -> loaded -> awaiting_ready -> document_ready
            -> injected -> executing -> done

with load_failed, status_rejected, runtime_exit, timed_out and closed as the
other ways out. Transitions out of a terminal state are no-ops, so when
several terminal triggers race only the first one replies, and the page is
released exactly once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

from playwright.async_api import Error as PlaywrightError

from sandcrawler_worker.core.exceptions import BrowserError
from sandcrawler_worker.core.gateway import (
    TOPIC_PAGE_ALERT,
    TOPIC_PAGE_ERROR,
    TOPIC_PAGE_LOG,
    TOPIC_PAGE_NAVIGATION,
    MessageGateway,
)
from sandcrawler_worker.core.models import (
    DocumentReadySignal,
    DoneSignal,
    ExitSignal,
    OrderMessage,
    parse_page_signal,
)
from sandcrawler_worker.core.results import (
    FailureReason,
    unwrap_done_body,
    wrap_event,
    wrap_failure,
    wrap_success,
)
from sandcrawler_worker.executor.page_scripts import (
    ARTOO_SETTINGS_SCRIPT,
    ASYNC_EVALUATE_SCRIPT,
    JQUERY_NO_CONFLICT_SCRIPT,
    READY_POLL_SCRIPT,
    SIGNAL_BINDING,
)

logger = logging.getLogger(__name__)

PageFactory = Callable[[dict[str, Any]], Awaitable[Any]]
ExitCallback = Callable[[int], None]


class PageState(str, Enum):
    CREATED = "created"
    OPENING = "opening"
    LOAD_FAILED = "load_failed"
    LOADED = "loaded"
    STATUS_REJECTED = "status_rejected"
    AWAITING_READY = "awaiting_ready"
    DOCUMENT_READY = "document_ready"
    INJECTED = "injected"
    EXECUTING = "executing"
    DONE = "done"
    RUNTIME_EXIT = "runtime_exit"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


TERMINAL_STATES = frozenset(
    {
        PageState.LOAD_FAILED,
        PageState.STATUS_REJECTED,
        PageState.DONE,
        PageState.RUNTIME_EXIT,
        PageState.TIMED_OUT,
        PageState.CLOSED,
    }
)


class PageSession:
    """Drives one page through one scrape order."""

    def __init__(
        self,
        message: OrderMessage,
        gateway: MessageGateway,
        page_factory: PageFactory,
        default_settings: dict[str, Any] | None = None,
        bundles: dict[str, str] | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self.order = message.order
        self.call_id = message.call_id
        self.gateway = gateway
        self.default_settings = default_settings or {}
        self.bundles = bundles or {}
        self._page_factory = page_factory
        self._on_exit = on_exit

        self.state = PageState.CREATED
        self.outcome: PageState | None = None
        self.page: Any = None
        self.settings: dict[str, Any] = {}

        # Observed while the page loads
        self.current_url = self.order.url
        self.response: dict[str, Any] = {}
        self.error: dict[str, Any] | None = None
        self.is_opened = False
        # Last uncaught page error once the order's script is in play
        self.script_error: dict[str, Any] | None = None

        self._first_navigation = True
        self._primary_request_pending = False
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._released = False
        self._closed = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def _log_extra(self) -> dict[str, Any]:
        return {"call_id": self.call_id, "url": self.current_url, "state": self.state.value}

    def _transition(self, target: PageState, allowed_from: frozenset[PageState] | None = None) -> bool:
        """Move to target unless the session is terminal or in an unexpected state."""
        if self.is_terminal:
            logger.debug(
                f"[Page Session] Ignoring {target.value} in terminal state {self.state.value}",
                extra=self._log_extra(),
            )
            return False
        if allowed_from is not None and self.state not in allowed_from:
            logger.debug(
                f"[Page Session] Ignoring {target.value} from state {self.state.value}",
                extra=self._log_extra(),
            )
            return False
        self.state = target
        return True

    async def _finish(self, outcome: PageState, payload: dict[str, Any] | None = None) -> bool:
        """Terminal transition: reply (if any) then release the page."""
        if not self._transition(outcome):
            return False

        self.outcome = outcome
        logger.info(f"[Page Session] Order {self.call_id} finished: {outcome.value}", extra=self._log_extra())
        try:
            if payload is not None:
                await self.gateway.reply_to(self.call_id, payload)
        finally:
            await self.cleanup()
        return True

    async def cleanup(self) -> None:
        """Cancel the timeout and release the page. Runs at most once."""
        if self._released:
            return
        self._released = True

        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

        if self.outcome is None:
            self.outcome = PageState.CLOSED
        self.state = PageState.CLOSED

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

        try:
            if self.page is not None:
                await self._close_page(self.page)
        finally:
            self._closed.set()

    async def _close_page(self, page: Any) -> None:
        try:
            await page.context.close()
        except PlaywrightError as e:
            logger.debug(f"[Page Session] Page already gone: {e}", extra=self._log_extra())

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"[Page Session] Callback failed for order {self.call_id}: {exc}",
                exc_info=exc,
                extra=self._log_extra(),
            )

    # -------------------------------------------------------------------------
    # Opening
    # -------------------------------------------------------------------------

    def resolve_page_settings(self) -> dict[str, Any]:
        """Order settings over worker defaults; a user-agent header wins over both."""
        page_settings = {**self.default_settings, **self.order.page_settings}

        user_agent = self.order.user_agent
        if user_agent:
            page_settings["userAgent"] = user_agent

        return page_settings

    def _arm_timeout(self) -> None:
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(self.order.timeout / 1000, self._on_timeout)

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        logger.info(
            f"[Page Session] Order {self.call_id} timed out after {self.order.timeout}ms",
            extra=self._log_extra(),
        )
        self._spawn(self._finish(PageState.TIMED_OUT))

    async def start(self) -> None:
        """Create the page, register callbacks and open the order's URL."""
        if not self._transition(PageState.OPENING, allowed_from=frozenset({PageState.CREATED})):
            return

        self.settings = self.resolve_page_settings()
        self._arm_timeout()

        try:
            page = await self._page_factory(self.settings)
        except BrowserError as e:
            logger.error(f"[Page Session] Could not create page for order {self.call_id}: {e}", extra=self._log_extra())
            await self.cleanup()
            return

        if self._released:
            # Timed out while the page was being created
            await self._close_page(page)
            return
        self.page = page

        try:
            await self._register_callbacks()
            await self._install_routes()
        except PlaywrightError as e:
            if self.is_terminal:
                return
            logger.error(f"[Page Session] Could not prepare page for order {self.call_id}: {e}", extra=self._log_extra())
            await self._finish(PageState.LOAD_FAILED, wrap_failure(self.current_url, self.response, FailureReason.FAIL, self.error))
            return

        logger.info(f"[Page Session] Opening {self.order.url}", extra=self._log_extra())
        try:
            await self.page.goto(self.order.url, wait_until="load", timeout=0)
            status = "success"
        except PlaywrightError as e:
            if self.is_terminal:
                return
            logger.info(f"[Page Session] Navigation failed for order {self.call_id}: {e}", extra=self._log_extra())
            status = "fail"

        await self.handle_load_finished(status)

    async def _register_callbacks(self) -> None:
        page = self.page
        await page.expose_function(SIGNAL_BINDING, self._on_signal)
        page.on("request", self._on_request)
        page.on("response", self._on_response)
        page.on("requestfailed", self._on_request_failed)
        page.on("framenavigated", self._on_frame_navigated)
        page.on("console", self._on_console)
        page.on("pageerror", self._on_page_error)
        page.on("dialog", self._on_dialog)

    def primary_request_overrides(self, headers: dict[str, str]) -> dict[str, Any]:
        """Method, headers and body for the order's own request."""
        overrides: dict[str, Any] = {}
        order = self.order

        if order.method != "GET":
            overrides["method"] = order.method

        if order.headers:
            overrides["headers"] = {**headers, **order.headers}

        if order.body is not None and order.method != "GET":
            body = order.body
            if isinstance(body, dict):
                body = urlencode(body)
            overrides["post_data"] = body.encode(order.encoding)

        return overrides

    async def _install_routes(self) -> None:
        block_images = not self.settings.get("loadImages", True)
        self._primary_request_pending = bool(self.primary_request_overrides({}))

        if block_images or self._primary_request_pending:
            await self.page.route("**/*", self._on_route)

    async def _on_route(self, route: Any, request: Any) -> None:
        try:
            if self._primary_request_pending and request.is_navigation_request():
                self._primary_request_pending = False
                await route.continue_(**self.primary_request_overrides(request.headers))
            elif not self.settings.get("loadImages", True) and request.resource_type == "image":
                await route.abort()
            else:
                await route.continue_()
        except PlaywrightError as e:
            logger.debug(f"[Page Session] Route not handled: {e}", extra=self._log_extra())

    # -------------------------------------------------------------------------
    # Network observation
    # -------------------------------------------------------------------------

    def handle_url_changed(self, url: str) -> None:
        if not self.is_terminal:
            self.current_url = url

    def handle_response(self, url: str, status: int | None, headers: dict[str, str] | None) -> None:
        """Record the response for the tracked URL, until the page is opened."""
        if self.is_opened or url != self.current_url:
            return

        self.response = {
            "url": url,
            "status": status,
            "headers": headers,
        }

    def handle_resource_error(self, url: str, error_text: str | None) -> None:
        """Keep errors on the tracked URL for failure diagnostics."""
        if self.is_terminal:
            return

        if url == self.current_url or self.current_url in url:
            self.error = {
                "url": url,
                "errorString": error_text,
            }

    def _on_request(self, request: Any) -> None:
        if not request.is_navigation_request() or request.frame != self.page.main_frame:
            return

        self.handle_url_changed(request.url)
        nav_type = "FormSubmitted" if request.method == "POST" else "Other"
        self._spawn(self.handle_navigation_requested(request.url, nav_type, True))

    def _on_response(self, response: Any) -> None:
        self.handle_response(response.url, response.status, response.headers)

    def _on_request_failed(self, request: Any) -> None:
        self.handle_resource_error(request.url, request.failure)

    def _on_frame_navigated(self, frame: Any) -> None:
        if frame == self.page.main_frame:
            self.handle_url_changed(frame.url)

    # -------------------------------------------------------------------------
    # Load, readiness, injection, execution
    # -------------------------------------------------------------------------

    async def handle_load_finished(self, status: str) -> None:
        if self.state is not PageState.OPENING:
            return

        self.is_opened = True

        if status != "success":
            await self._finish(
                PageState.LOAD_FAILED,
                wrap_failure(self.current_url, self.response, FailureReason.FAIL, self.error),
            )
            return

        self._transition(PageState.LOADED)

        status_code = self.response.get("status")
        if not status_code or status_code >= 400:
            await self._finish(
                PageState.STATUS_REJECTED,
                wrap_failure(self.current_url, self.response, FailureReason.STATUS, self.error),
            )
            return

        self._transition(PageState.AWAITING_READY)
        await self._evaluate(READY_POLL_SCRIPT)

    def _on_signal(self, raw: Any = None) -> None:
        self._spawn(self.handle_signal(raw))

    async def handle_signal(self, raw: Any) -> None:
        """Dispatch an in-page signal; unauthenticated or malformed ones are dropped."""
        signal = parse_page_signal(raw)
        if signal is None:
            logger.debug("[Page Session] Dropping unauthenticated page signal", extra=self._log_extra())
            return

        if isinstance(signal, DocumentReadySignal):
            await self.handle_document_ready()
        elif isinstance(signal, DoneSignal):
            await self.handle_done(signal.body)
        elif isinstance(signal, ExitSignal):
            await self.handle_exit(signal.exit_code)

    async def handle_document_ready(self) -> None:
        if not self._transition(PageState.DOCUMENT_READY, allowed_from=frozenset({PageState.AWAITING_READY})):
            return

        await self._inject_helpers()
        if not self._transition(PageState.INJECTED):
            return

        order = self.order
        if not order.script:
            await self._finish(PageState.DONE, wrap_success(self.current_url, self.response, error=self.script_error))
            return

        self._transition(PageState.EXECUTING)

        if order.synchronous_script:
            error = None
            try:
                data = await self.page.evaluate(order.script)
            except PlaywrightError as e:
                if self.is_terminal:
                    return
                logger.info(f"[Page Session] Script failed for order {self.call_id}: {e}", extra=self._log_extra())
                data, error = None, e

            await self._finish(
                PageState.DONE,
                wrap_success(self.current_url, self.response, data=data, error=error or self.script_error),
            )
        else:
            await self._evaluate(ASYNC_EVALUATE_SCRIPT, order.script)

    async def _inject_helpers(self) -> None:
        """jQuery (no conflict), then artoo settings, then artoo itself."""
        jquery = self.bundles.get("jquery_path")
        if jquery and await self._add_script(jquery):
            await self._evaluate(JQUERY_NO_CONFLICT_SCRIPT)

        await self._evaluate(ARTOO_SETTINGS_SCRIPT, json.dumps(self.order.artoo_config))

        artoo = self.bundles.get("artoo_path")
        if artoo:
            await self._add_script(artoo)

    async def _add_script(self, location: str) -> bool:
        if location.startswith(("http://", "https://")):
            kwargs = {"url": location}
        else:
            kwargs = {"path": location}

        try:
            await self.page.add_script_tag(**kwargs)
            return True
        except PlaywrightError as e:
            if not self.is_terminal:
                logger.warning(f"[Page Session] Could not inject {location}: {e}", extra=self._log_extra())
            return False

    async def _evaluate(self, expression: str, arg: Any = None) -> Any:
        try:
            return await self.page.evaluate(expression, arg)
        except PlaywrightError as e:
            if self.is_terminal:
                logger.debug(f"[Page Session] Evaluation after close: {e}", extra=self._log_extra())
            else:
                logger.warning(f"[Page Session] Evaluation failed: {e}", extra=self._log_extra())
            return None

    async def handle_done(self, body: Any) -> None:
        result = unwrap_done_body(body)
        await self._finish(
            PageState.DONE,
            wrap_success(
                self.current_url,
                self.response,
                data=result["data"],
                error=result["error"] or self.script_error,
            ),
        )

    async def handle_exit(self, code: int = 0) -> None:
        """Page asked the worker process to exit: close first, exit on the next tick."""
        if not await self._finish(PageState.RUNTIME_EXIT):
            return

        logger.warning(f"[Page Session] Order {self.call_id} requested worker exit ({code})", extra=self._log_extra())
        if self._on_exit is not None:
            asyncio.get_running_loop().call_soon(self._on_exit, code)

    # -------------------------------------------------------------------------
    # Relayed page events
    # -------------------------------------------------------------------------

    async def _publish(self, topic: str, data: dict[str, Any]) -> None:
        if self.is_terminal:
            return
        await self.gateway.publish(topic, wrap_event(self.call_id, data))

    async def handle_navigation_requested(self, url: str, nav_type: str, will_navigate: bool) -> None:
        # The first navigation is the order's own request
        if self._first_navigation:
            self._first_navigation = False
            return

        if not will_navigate:
            return

        await self._publish(TOPIC_PAGE_NAVIGATION, {"to": url, "type": nav_type})

    async def handle_console(self, message: str, line: int | None = None, source: str | None = None) -> None:
        await self._publish(TOPIC_PAGE_LOG, {"message": message, "line": line, "source": source})

    async def handle_page_error(self, message: str, trace: Any = None) -> None:
        if self.state in (PageState.DOCUMENT_READY, PageState.INJECTED, PageState.EXECUTING):
            self.script_error = {"message": message, "trace": trace}
        await self._publish(TOPIC_PAGE_ERROR, {"message": message, "trace": trace})

    async def handle_alert(self, message: str) -> None:
        await self._publish(TOPIC_PAGE_ALERT, {"message": message})

    async def _on_console(self, msg: Any) -> None:
        location = msg.location or {}
        await self.handle_console(msg.text, location.get("lineNumber"), location.get("url"))

    async def _on_page_error(self, error: Any) -> None:
        await self.handle_page_error(getattr(error, "message", str(error)), getattr(error, "stack", None))

    async def _on_dialog(self, dialog: Any) -> None:
        try:
            if dialog.type == "alert":
                await self.handle_alert(dialog.message)
                await dialog.accept()
            else:
                await dialog.dismiss()
        except PlaywrightError as e:
            logger.debug(f"[Page Session] Dialog not handled: {e}", extra=self._log_extra())

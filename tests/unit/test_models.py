"""
Unit tests for protocol models: orders, inbound envelopes and page signals.
"""

import pytest
from pydantic import ValidationError

from sandcrawler_worker.core.exceptions import OrderValidationError
from sandcrawler_worker.core.models import (
    DEFAULT_TIMEOUT_MS,
    DocumentReadySignal,
    DoneSignal,
    ExitSignal,
    ScrapeOrder,
    parse_order_message,
    parse_page_signal,
)


class TestScrapeOrder:
    def test_defaults(self):
        order = ScrapeOrder(url="https://example.com")

        assert order.method == "GET"
        assert order.encoding == "utf-8"
        assert order.timeout == DEFAULT_TIMEOUT_MS
        assert order.script is None
        assert order.synchronous_script is False
        assert order.page_settings == {}
        assert order.artoo_config == {}

    def test_wire_aliases(self):
        order = ScrapeOrder.model_validate(
            {
                "url": "https://example.com",
                "method": "post",
                "synchronousScript": True,
                "page": {"loadImages": False},
                "artoo": {"log": {"enabled": False}},
                "timeout": 2000,
            }
        )

        assert order.method == "POST"
        assert order.synchronous_script is True
        assert order.page_settings == {"loadImages": False}
        assert order.artoo_config == {"log": {"enabled": False}}
        assert order.timeout == 2000

    @pytest.mark.parametrize("timeout", [0, None])
    def test_empty_timeout_falls_back_to_default(self, timeout):
        order = ScrapeOrder(url="https://example.com", timeout=timeout)

        assert order.timeout == DEFAULT_TIMEOUT_MS

    @pytest.mark.parametrize("timeout, expected", [(2500.5, 2501), (2000.0, 2000), (0.25, 1)])
    def test_fractional_timeout_rounds_up(self, timeout, expected):
        order = ScrapeOrder(url="https://example.com", timeout=timeout)

        assert order.timeout == expected

    def test_negative_timeout_rejected(self):
        with pytest.raises(ValidationError):
            ScrapeOrder(url="https://example.com", timeout=-1)

    def test_orders_are_frozen(self):
        order = ScrapeOrder(url="https://example.com")

        with pytest.raises(ValidationError):
            order.url = "https://elsewhere.com"

    def test_header_lookup_is_case_insensitive(self):
        order = ScrapeOrder(url="https://example.com", headers={"USER-AGENT": "bot/2", "X-Id": 7})

        assert order.user_agent == "bot/2"
        assert order.header("x-id") == "7"
        assert order.header("accept") is None


class TestParseOrderMessage:
    def test_valid_message(self):
        message = parse_order_message({"id": 42, "body": {"url": "https://example.com"}})

        assert message.call_id == "42"
        assert message.order.url == "https://example.com"

    @pytest.mark.parametrize(
        "raw",
        [
            "not a message",
            {"body": {"url": "https://example.com"}},
            {"id": "call-1"},
            {"id": "call-1", "body": {"method": "GET"}},
            {"id": "call-1", "body": {"url": ""}},
        ],
    )
    def test_malformed_messages_raise(self, raw):
        with pytest.raises(OrderValidationError):
            parse_order_message(raw)

    def test_error_carries_call_id_and_details(self):
        with pytest.raises(OrderValidationError) as exc_info:
            parse_order_message({"id": "call-9", "body": {"timeout": "soon"}})

        assert exc_info.value.call_id == "call-9"
        locations = [err["loc"] for err in exc_info.value.validation_errors]
        assert ["body", "url"] in locations


class TestParsePageSignal:
    def test_known_heads(self):
        assert isinstance(parse_page_signal({"head": "documentReady", "passphrase": "detoo"}), DocumentReadySignal)
        assert isinstance(parse_page_signal({"head": "done", "body": [1], "passphrase": "detoo"}), DoneSignal)
        assert isinstance(parse_page_signal({"head": "exit", "passphrase": "detoo"}), ExitSignal)

    @pytest.mark.parametrize(
        "raw",
        [
            {"head": "done", "passphrase": "Detoo"},
            {"head": "done"},
            {"head": "reload", "passphrase": "detoo"},
            ["done", "detoo"],
            42,
        ],
    )
    def test_unauthenticated_or_unknown_signals(self, raw):
        assert parse_page_signal(raw) is None

    @pytest.mark.parametrize("body,expected", [(3, 3), (None, 0), ("1", 0), (True, 0)])
    def test_exit_code(self, body, expected):
        signal = parse_page_signal({"head": "exit", "body": body, "passphrase": "detoo"})

        assert signal.exit_code == expected

"""
Protocol Models

Pydantic models for everything crossing a process or sandbox boundary:
- ScrapeOrder: the order body sent by the orchestrator (FROZEN)
- OrderMessage: the inbound envelope binding an order to its call id
- Page signals: messages posted from inside the page via window.callPhantom

Orders are immutable once parsed. Anything that changes during execution,
such as the URL after a redirect, lives on the page session instead.
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from sandcrawler_worker.core.exceptions import OrderValidationError

# Shared secret carried by every in-page signal
SIGNAL_PASSPHRASE = "detoo"

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_ENCODING = "utf-8"
DEFAULT_METHOD = "GET"


# =============================================================================
# ORDER MODELS
# =============================================================================


class ScrapeOrder(BaseModel):
    """
    One scrape job as sent by the orchestrator.

    Attributes:
        url: Target page URL
        method: HTTP method of the primary request
        headers: Extra headers for the primary request
        body: Request payload for non-GET requests
        encoding: Encoding used for the request payload
        timeout: Order lifespan in milliseconds
        script: Function source evaluated inside the page
        synchronous_script: If True the script's return value is the result,
            otherwise the script must signal completion itself
        page_settings: Browser settings merged over the worker defaults
        artoo_config: Opaque settings handed to the in-page helper
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str = Field(..., min_length=1)
    method: str = DEFAULT_METHOD
    headers: dict[str, str] | None = None
    body: str | dict[str, Any] | None = None
    encoding: str = DEFAULT_ENCODING
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    script: str | None = None
    synchronous_script: bool = Field(
        default=False,
        validation_alias=AliasChoices("synchronousScript", "synchronous_script"),
    )
    page_settings: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("pageSettings", "page", "page_settings"),
    )
    artoo_config: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("artooConfig", "artoo", "artoo_config"),
    )

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> str:
        """Uppercase the method, falling back to GET when empty."""
        if not v:
            return DEFAULT_METHOD
        return str(v).upper()

    @field_validator("encoding", mode="before")
    @classmethod
    def default_encoding(cls, v: Any) -> str:
        return v or DEFAULT_ENCODING

    @field_validator("timeout", mode="before")
    @classmethod
    def default_timeout(cls, v: Any) -> int:
        # Fractional milliseconds round up so a short timeout never becomes zero
        if isinstance(v, float) and math.isfinite(v):
            v = math.ceil(v)
        return v or DEFAULT_TIMEOUT_MS

    @field_validator("headers", mode="before")
    @classmethod
    def stringify_headers(cls, v: Any) -> dict[str, str] | None:
        if not v:
            return None
        if isinstance(v, dict):
            return {str(name): str(value) for name, value in v.items()}
        return v

    @field_validator("page_settings", "artoo_config", mode="before")
    @classmethod
    def default_mapping(cls, v: Any) -> Any:
        return v if v is not None else {}

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        if not self.headers:
            return None
        wanted = name.lower()
        for header_name, value in self.headers.items():
            if header_name.lower() == wanted:
                return value
        return None

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")


class OrderMessage(BaseModel):
    """Inbound envelope: ``{"id": <call id>, "body": <order>}``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    call_id: str = Field(..., validation_alias=AliasChoices("id", "callId", "call_id"))
    order: ScrapeOrder = Field(..., validation_alias=AliasChoices("body", "order"))

    @field_validator("call_id", mode="before")
    @classmethod
    def stringify_call_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


def parse_order_message(raw: Any) -> OrderMessage:
    """
    Validate a raw inbound message into an OrderMessage.

    Raises:
        OrderValidationError: If the message is not a well-formed order
    """
    if not isinstance(raw, dict):
        raise OrderValidationError(f"Order message must be an object, got {type(raw).__name__}")

    call_id = raw.get("id", raw.get("callId"))
    try:
        return OrderMessage.model_validate(raw)
    except ValidationError as e:
        raise OrderValidationError(
            "Invalid scrape order",
            call_id=str(call_id) if call_id is not None else None,
            validation_errors=[
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in e.errors()
            ],
        ) from e


# =============================================================================
# IN-PAGE SIGNALS
# =============================================================================


class _PageSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    passphrase: Literal["detoo"]
    body: Any = None


class DocumentReadySignal(_PageSignal):
    head: Literal["documentReady"]


class DoneSignal(_PageSignal):
    head: Literal["done"]


class ExitSignal(_PageSignal):
    head: Literal["exit"]

    @property
    def exit_code(self) -> int:
        if isinstance(self.body, int) and not isinstance(self.body, bool):
            return self.body
        return 0


PageSignal = Annotated[
    Union[DocumentReadySignal, DoneSignal, ExitSignal],
    Field(discriminator="head"),
]

_page_signal_adapter: TypeAdapter[PageSignal] = TypeAdapter(PageSignal)


def parse_page_signal(raw: Any) -> DocumentReadySignal | DoneSignal | ExitSignal | None:
    """
    Authenticate and parse a message posted from inside the page.

    Returns None for anything that is not an object carrying the exact
    passphrase and a known head. Such messages are dropped by the caller.
    """
    if not isinstance(raw, dict) or raw.get("passphrase") != SIGNAL_PASSPHRASE:
        return None
    try:
        return _page_signal_adapter.validate_python(raw)
    except ValidationError:
        return None

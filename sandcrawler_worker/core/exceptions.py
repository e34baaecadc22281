"""
Exception hierarchy for the sandcrawler worker.

Job outcomes (navigation failure, bad status, timeout) are not exceptions:
they are replies, or the absence of one. These classes cover the worker's
own failures around a job.
"""

from __future__ import annotations

from typing import Any


class WorkerError(Exception):
    """Base class for worker errors."""

    pass


class BrowserError(WorkerError):
    """Raised when the browser cannot be launched or a page cannot be created."""

    def __init__(self, message: str, original_error: Exception | None = None):
        self.original_error = original_error
        super().__init__(message)


class GatewayError(WorkerError):
    """Raised when a gateway transport cannot deliver a message."""

    def __init__(self, message: str, topic: str | None = None, original_error: Exception | None = None):
        self.topic = topic
        self.original_error = original_error
        super().__init__(message)


class OrderValidationError(WorkerError):
    """Raised when an inbound message is not a well-formed scrape order."""

    def __init__(
        self,
        message: str,
        call_id: str | None = None,
        validation_errors: list[dict[str, Any]] | None = None,
    ):
        self.call_id = call_id
        self.validation_errors = validation_errors or []
        full_message = f"{message} (call_id={call_id})" if call_id else message
        super().__init__(full_message)

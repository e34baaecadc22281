"""
Result wrapping for scrape order replies and page events.

Pure functions turning what a page session observed into the payloads sent
back to the orchestrator.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class FailureReason(str, Enum):
    """Why an order failed before its script could run."""

    FAIL = "fail"  # navigation did not succeed
    STATUS = "status"  # HTTP status missing or >= 400


def serialize_error(error: Any) -> dict[str, Any]:
    """Turn an error reported by a script into a mapping of diagnostic fields."""
    if isinstance(error, Mapping):
        return dict(error)

    if isinstance(error, BaseException):
        serialized: dict[str, Any] = {
            "name": type(error).__name__,
            "message": getattr(error, "message", None) or str(error),
        }
        stack = getattr(error, "stack", None)
        if stack:
            serialized["stack"] = stack
        for key, value in vars(error).items():
            if key.startswith("_") or key in serialized:
                continue
            if isinstance(value, (str, int, float, bool)) or value is None:
                serialized[key] = value
        return serialized

    return {"message": str(error)}


def unwrap_done_body(body: Any) -> dict[str, Any]:
    """
    Normalize the body of a ``done`` signal into ``{"data", "error"}``.

    The in-page helper sends ``{"data": ..., "error": ...}``; a body without
    either key is taken as the data itself.
    """
    if isinstance(body, Mapping) and body and set(body.keys()) <= {"data", "error"}:
        return {"data": body.get("data"), "error": body.get("error")}
    return {"data": body, "error": None}


def wrap_success(
    url: str,
    response: Mapping[str, Any],
    data: Any = None,
    error: Any = None,
) -> dict[str, Any]:
    """Build the reply for an order whose script completed."""
    return {
        "url": url,
        "headers": response.get("headers"),
        "status": response.get("status"),
        "error": serialize_error(error) if error else None,
        "data": data,
    }


def wrap_failure(
    url: str,
    response: Mapping[str, Any],
    reason: FailureReason | str | None = None,
    error: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the reply for an order that failed to load."""
    result: dict[str, Any] = {
        "fail": True,
        "url": url,
        "headers": response.get("headers"),
        "status": response.get("status"),
    }

    if reason:
        result["reason"] = reason.value if isinstance(reason, FailureReason) else reason

    if error:
        result["error"] = dict(error)

    return result


def wrap_event(call_id: str, data: Any) -> dict[str, Any]:
    """Envelope for a published page event so it can be attributed to its order."""
    return {
        "data": data,
        "callId": call_id,
    }

"""
API response envelope.

Every JSON response has the shape:
    {success, data?, error?, code?, details?, message?, timestamp}
"""
from datetime import datetime, timezone
from typing import Any


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def api_response(data: Any = None, message: str | None = None) -> dict:
    """Build a success envelope."""
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    body["timestamp"] = utc_timestamp()
    return body


def error_response(error: str, code: str | None = None, details: Any = None) -> dict:
    """Build a failure envelope."""
    body: dict[str, Any] = {"success": False, "error": error}
    if code is not None:
        body["code"] = code
    if details is not None:
        body["details"] = details
    body["timestamp"] = utc_timestamp()
    return body

"""
Error taxonomy for ChatRelay.

Every error raised across a service boundary derives from ChatRelayError and
carries the HTTP status and machine code used by the API envelope.
"""
from typing import Any


class ChatRelayError(Exception):
    """Base error with HTTP mapping."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AlreadyExists(ChatRelayError):
    """Session id (or other unique key) is already registered."""

    status_code = 400
    code = "ALREADY_EXISTS"


class NotFound(ChatRelayError):
    """Session or webhook is absent."""

    status_code = 404
    code = "NOT_FOUND"


class NotConnected(ChatRelayError):
    """Session exists but cannot accept commands right now."""

    status_code = 400
    code = "SESSION_NOT_CONNECTED"

    def __init__(self, message: str = "Session not connected", details: Any = None):
        super().__init__(message, details)


SessionNotConnected = NotConnected


class ProtocolError(ChatRelayError):
    """The protocol client rejected a command."""

    status_code = 400
    code = "PROTOCOL_ERROR"


class ValidationError(ChatRelayError):
    """Request payload failed validation. `details` is a list of field errors."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation failed", details: list[dict] | None = None):
        super().__init__(message, details or [])


class AuthenticationError(ChatRelayError):
    """Missing or invalid credentials."""

    status_code = 401
    code = "UNAUTHORIZED"


class RateLimitExceeded(ChatRelayError):
    """Owner exceeded the request budget for the current window."""

    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, retry_after: int):
        super().__init__("Rate limit exceeded. Please try again later.")
        self.retry_after = retry_after


class WebhookDeliveryFailure(ChatRelayError):
    """
    A webhook attempt failed.

    Only used inside WebhookDispatcher's retry loop; never surfaced to the
    event path that triggered the delivery.
    """

    code = "WEBHOOK_DELIVERY_FAILED"

    def __init__(self, message: str, response: dict | None = None, retryable: bool = True):
        super().__init__(message, response)
        self.response = response
        self.retryable = retryable

"""
Sentry error tracking.

Off unless SENTRY_DSN is set. Client errors (4xx ChatRelayError) are not
reported, and credentials are scrubbed from events before they leave the
process.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from chatrelay.config import settings
from chatrelay.errors import ChatRelayError
from chatrelay.logging_config import get_logger

logger = get_logger(component="sentry")

SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "cookie", "x-webhook-signature"})
SENSITIVE_FIELDS = frozenset({"password", "currentPassword", "newPassword", "secret", "apiKey", "token"})
FILTERED = "[Filtered]"


def configure_sentry() -> bool:
    """Initialise Sentry with FastAPI and SQLAlchemy integrations. Returns whether it is on."""
    dsn = settings.SENTRY_DSN
    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return False

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        before_send=scrub_event,
        traces_sample_rate=0.1,
        send_default_pii=False,
        environment=settings.ENVIRONMENT,
        release=f"chatrelay@{settings.APP_VERSION}",
    )
    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)
    return True


def _scrub(value):
    if isinstance(value, dict):
        return {k: FILTERED if k in SENSITIVE_FIELDS else _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def scrub_event(event, hint):
    """
    before_send hook.

    Drops events for expected client errors and masks credentials in the
    request headers and body.
    """
    exc_info = hint.get("exc_info") if hint else None
    if exc_info:
        exc = exc_info[1]
        if isinstance(exc, ChatRelayError) and exc.status_code < 500:
            return None

    request = event.get("request")
    if request:
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {
                k: FILTERED if k.lower() in SENSITIVE_HEADERS else v for k, v in headers.items()
            }
        if "data" in request:
            request["data"] = _scrub(request["data"])
    return event


def capture_exception(exc_info=None, session_id: str | None = None):
    """
    Report an exception that is handled rather than raised.

    Usage:
        except Exception:
            capture_exception(session_id=session_id)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        if session_id:
            scope.set_tag("session_id", session_id)
        sentry_sdk.capture_exception(exc_info)

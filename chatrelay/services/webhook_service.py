"""
Webhook Service

Handles outbound webhook delivery with signing, retry logic and
delivery-record bookkeeping.
"""
import asyncio
import hashlib
import hmac
import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from chatrelay.config import settings
from chatrelay.errors import NotFound, WebhookDeliveryFailure
from chatrelay.logging_config import get_logger
from chatrelay.models.webhook import DeliveryStatus, Webhook
from chatrelay.responses import utc_timestamp
from chatrelay.routes.metrics import track_webhook_delivery, track_webhook_retry
from chatrelay.sentry_config import capture_exception
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.scheduler import DelayedTaskScheduler

logger = get_logger(component="webhook_dispatcher")

USER_AGENT = "ChatRelay-Webhook/1.0"
TEST_EVENT = "webhook.test"
# stored response bodies are truncated to this many characters
RESPONSE_BODY_LIMIT = 1000


def generate_webhook_signature(payload: str | bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(payload: str | bytes, signature: str, secret: str) -> bool:
    """
    Check an X-Webhook-Signature header against the exact body received.

    Usage (receiver side):
        body = await request.body()
        if not verify_webhook_signature(body, request.headers["X-Webhook-Signature"], secret):
            raise HTTPException(401)
    """
    if not signature or not secret:
        return False
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature)


def build_envelope(event: str, data: Any) -> dict:
    return {"event": event, "timestamp": utc_timestamp(), "data": data}


def serialize_envelope(envelope: dict) -> bytes:
    """Serialise once; the signature is computed over these exact bytes."""
    return json.dumps(envelope, separators=(",", ":"), default=str).encode()


def calculate_retry_delay(attempt: int, base: float = 1.0, cap: float = 300.0) -> float:
    """Exponential backoff: base * 2**attempt seconds, capped."""
    return min((2 ** attempt) * base, cap)


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class WebhookDispatcher:
    """
    Delivers events to owner-registered endpoints.

    Delivery attempts run as independent tasks. Retries are delayed tasks keyed
    by delivery id and are all cancelled by `cleanup()`.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        http_client: httpx.AsyncClient | None = None,
        scheduler: DelayedTaskScheduler | None = None,
        timeout: float | None = None,
        retry_base_seconds: float | None = None,
        retry_max_seconds: float | None = None,
        retention_days: int | None = None,
    ):
        self.persistence = persistence
        self.timeout = timeout if timeout is not None else settings.WEBHOOK_TIMEOUT_SECONDS
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else settings.WEBHOOK_RETRY_BASE_SECONDS
        )
        self.retry_max_seconds = (
            retry_max_seconds if retry_max_seconds is not None else settings.WEBHOOK_RETRY_MAX_SECONDS
        )
        self.retention_days = retention_days if retention_days is not None else settings.WEBHOOK_RETENTION_DAYS
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.timeout)
        self.scheduler = scheduler or DelayedTaskScheduler(name="webhook_retry")
        # serialises retry-counter updates per webhook
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def fan_out(self, owner_id: str, event_type: str, payload: Any) -> list[str]:
        """
        Create one PENDING delivery per subscribed webhook and attempt each once.

        Returns:
            Ids of the deliveries created
        """
        webhooks = await self.persistence.get_subscribed_webhooks(owner_id, event_type)
        if not webhooks:
            return []

        delivery_ids = []
        for webhook in webhooks:
            delivery = await self.persistence.create_delivery(webhook.id, event_type, payload)
            delivery_ids.append(delivery.id)

        await asyncio.gather(*(self.attempt_delivery(delivery_id) for delivery_id in delivery_ids))
        return delivery_ids

    def spawn(self, coro) -> asyncio.Task:
        """Run a delivery coroutine in the background, tracked until it finishes."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for background attempts started with `spawn`."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _post(self, webhook: Webhook, event: str, delivery_id: str | None, body: bytes) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": event,
        }
        if delivery_id:
            headers["X-Webhook-Delivery"] = delivery_id
        if webhook.secret:
            headers["X-Webhook-Signature"] = generate_webhook_signature(body, webhook.secret)

        return await self.http_client.post(
            webhook.url,
            content=body,
            headers=headers,
            timeout=self.timeout,
        )

    async def _send(self, webhook: Webhook, event: str, delivery_id: str, body: bytes) -> dict:
        """
        POST once.

        Returns:
            Captured response for diagnostics

        Raises:
            WebhookDeliveryFailure: non-2xx response or transport error
        """
        try:
            response = await self._post(webhook, event, delivery_id, body)
        except httpx.HTTPError as e:
            message = str(e) or e.__class__.__name__
            raise WebhookDeliveryFailure(message, {"error": message}, retryable=True)

        captured = {"status": response.status_code, "body": response.text[:RESPONSE_BODY_LIMIT]}
        if _is_success(response.status_code):
            return captured
        raise WebhookDeliveryFailure(
            f"HTTP {response.status_code}",
            captured,
            retryable=response.status_code >= 500,
        )

    async def attempt_delivery(self, delivery_id: str) -> bool:
        """
        Make one HTTP attempt for a delivery and record the outcome.

        Never raises; failures are handled by the retry policy.

        Returns:
            True if the endpoint answered 2xx
        """
        try:
            return await self._attempt(delivery_id)
        except Exception as e:
            logger.error("webhook_attempt_error", delivery_id=delivery_id, error=str(e), exc_info=True)
            capture_exception()
            return False

    async def _attempt(self, delivery_id: str) -> bool:
        delivery = await self.persistence.get_delivery(delivery_id)
        if delivery is None:
            logger.warning("webhook_delivery_missing", delivery_id=delivery_id)
            return False
        if delivery.status.is_terminal:
            return delivery.status == DeliveryStatus.SUCCESS

        webhook = await self.persistence.get_webhook(delivery.webhook_id)
        if webhook is None:
            await self.persistence.update_delivery(
                delivery_id,
                status=DeliveryStatus.FAILED,
                next_retry_at=None,
                response={"error": "Webhook inactive"},
            )
            return False

        body = serialize_envelope(build_envelope(delivery.event, delivery.payload))
        await self.persistence.increment_delivery_attempts(delivery_id)

        try:
            captured = await self._send(webhook, delivery.event, delivery_id, body)
        except WebhookDeliveryFailure as failure:
            await self._handle_failure(webhook, delivery_id, failure)
            return False

        await self.persistence.update_delivery(
            delivery_id,
            status=DeliveryStatus.SUCCESS,
            next_retry_at=None,
            response=captured,
        )
        async with self._locks[webhook.id]:
            await self.persistence.reset_webhook_failures(webhook.id)
        track_webhook_delivery("success")
        logger.info("webhook_delivered", delivery_id=delivery_id, webhook_id=webhook.id, event=delivery.event)
        return True

    async def _handle_failure(self, webhook: Webhook, delivery_id: str, failure: WebhookDeliveryFailure) -> None:
        """Apply the retry policy to a failed attempt."""
        async with self._locks[webhook.id]:
            prior, max_retries = await self.persistence.record_webhook_failure(webhook.id, failure.message)

            if failure.retryable and prior < max_retries:
                delay = calculate_retry_delay(prior, self.retry_base_seconds, self.retry_max_seconds)
                await self.persistence.update_delivery(
                    delivery_id,
                    status=DeliveryStatus.RETRYING,
                    next_retry_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
                    response=failure.response,
                )
                self.scheduler.schedule(delivery_id, delay, lambda: self.attempt_delivery(delivery_id))
                track_webhook_delivery("retrying")
                track_webhook_retry()
                logger.warning(
                    "webhook_retry_scheduled",
                    delivery_id=delivery_id,
                    webhook_id=webhook.id,
                    retry=prior + 1,
                    delay_seconds=delay,
                    error=failure.message,
                )
                return

        await self.persistence.update_delivery(
            delivery_id,
            status=DeliveryStatus.FAILED,
            next_retry_at=None,
            response=failure.response,
        )
        track_webhook_delivery("failed")
        logger.error(
            "webhook_failed",
            delivery_id=delivery_id,
            webhook_id=webhook.id,
            retryable=failure.retryable,
            error=failure.message,
        )

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    async def _get_owned_webhook(self, webhook_id: str, owner_id: str | None) -> Webhook:
        webhook = await self.persistence.get_webhook(webhook_id, owner_id)
        if webhook is None:
            raise NotFound("Webhook not found")
        return webhook

    async def test_webhook(self, webhook_id: str, owner_id: str | None = None) -> bool:
        """
        Send a synthetic `webhook.test` event once. No delivery record, no retry.

        Returns:
            True if the endpoint answered 2xx
        """
        webhook = await self._get_owned_webhook(webhook_id, owner_id)
        body = serialize_envelope(build_envelope(TEST_EVENT, {
            "webhookId": webhook.id,
            "message": "This is a test webhook from ChatRelay",
        }))
        try:
            response = await self._post(webhook, TEST_EVENT, None, body)
        except httpx.HTTPError as e:
            logger.warning("webhook_test_failed", webhook_id=webhook.id, error=str(e))
            return False

        success = _is_success(response.status_code)
        logger.info("webhook_tested", webhook_id=webhook.id, status_code=response.status_code, success=success)
        return success

    async def retry_failed_deliveries(self, webhook_id: str, owner_id: str | None = None, limit: int = 100) -> int:
        """
        Manual retry: reset the failure counter and re-attempt FAILED deliveries.

        Attempts run in the background.

        Returns:
            Number of deliveries re-queued
        """
        webhook = await self._get_owned_webhook(webhook_id, owner_id)
        async with self._locks[webhook.id]:
            await self.persistence.reset_webhook_failures(webhook.id)

        failed = await self.persistence.get_deliveries(webhook.id, limit=limit, status=DeliveryStatus.FAILED)
        for delivery in failed:
            await self.persistence.update_delivery(delivery.id, status=DeliveryStatus.PENDING, next_retry_at=None)
            self.spawn(self.attempt_delivery(delivery.id))

        logger.info("webhook_manual_retry", webhook_id=webhook.id, deliveries=len(failed))
        return len(failed)

    async def get_deliveries(
        self,
        webhook_id: str,
        owner_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        webhook = await self._get_owned_webhook(webhook_id, owner_id)
        deliveries = await self.persistence.get_deliveries(webhook.id, limit=limit, offset=offset)
        return [delivery.to_dict() for delivery in deliveries]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cleanup(self) -> int:
        """
        Cancel every pending retry and purge deliveries past the retention window.

        Returns:
            Number of delivery records purged
        """
        cancelled = self.scheduler.cancel_all()
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        purged = await self.persistence.purge_deliveries_before(cutoff)
        logger.info("webhook_cleanup", cancelled_retries=cancelled, purged=purged)
        return purged

    async def close(self) -> None:
        self.scheduler.cancel_all()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_client:
            await self.http_client.aclose()

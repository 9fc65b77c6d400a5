"""
Webhook dispatcher tests.

The receiver is an httpx MockTransport and retries are recorded instead of
slept, so each retry is fired by hand.
"""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from chatrelay.config import settings
from chatrelay.errors import NotFound
from chatrelay.models.webhook import DeliveryStatus
from chatrelay.services.webhook_service import (
    USER_AGENT,
    calculate_retry_delay,
    generate_webhook_signature,
    serialize_envelope,
    verify_webhook_signature,
)

OWNER = "owner-1"
EVENT = "message.received"
PAYLOAD = {"sessionId": "s1", "message": {"messageId": "M1"}}


async def only_delivery(persistence, webhook_id):
    deliveries = await persistence.get_deliveries(webhook_id)
    assert len(deliveries) == 1
    return deliveries[0]


def test_signature_round_trip():
    body = serialize_envelope({"event": EVENT, "timestamp": "t", "data": PAYLOAD})
    signature = generate_webhook_signature(body, "secret")

    assert len(signature) == 64
    assert verify_webhook_signature(body, signature, "secret")
    assert verify_webhook_signature(body.decode(), signature, "secret")


def test_signature_detects_tampering():
    body = serialize_envelope({"event": EVENT, "timestamp": "t", "data": PAYLOAD})
    signature = generate_webhook_signature(body, "secret")
    tampered = body.replace(b"M1", b"M2")

    assert not verify_webhook_signature(tampered, signature, "secret")
    assert not verify_webhook_signature(body, signature, "other-secret")
    assert not verify_webhook_signature(body, "", "secret")


def test_retry_delay_doubles_and_caps():
    assert [calculate_retry_delay(n) for n in range(4)] == [1, 2, 4, 8]
    assert calculate_retry_delay(20, base=1, cap=300) == 300
    assert calculate_retry_delay(2, base=0.5) == 2


async def test_successful_delivery(dispatcher, persistence, webhook_endpoint):
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT], secret="s3cret")

    delivery_ids = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    delivery = await only_delivery(persistence, webhook.id)
    assert delivery_ids == [delivery.id]
    assert delivery.status == DeliveryStatus.SUCCESS
    assert delivery.attempts == 1
    assert delivery.response["status"] == 200

    request = webhook_endpoint.requests[0]
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["User-Agent"] == USER_AGENT
    assert request.headers["X-Webhook-Event"] == EVENT
    assert request.headers["X-Webhook-Delivery"] == delivery.id
    assert verify_webhook_signature(request.content, request.headers["X-Webhook-Signature"], "s3cret")
    body = json.loads(request.content)
    assert body["event"] == EVENT
    assert body["data"] == PAYLOAD
    assert "timestamp" in body


async def test_unsigned_when_no_secret(dispatcher, persistence, webhook_endpoint):
    await persistence.create_webhook(OWNER, "https://hooks.example/in", ["*"])

    await dispatcher.fan_out(OWNER, "chat.updated", {"chat": {}})

    assert "X-Webhook-Signature" not in webhook_endpoint.requests[0].headers


async def test_server_errors_retry_with_backoff_then_fail(dispatcher, persistence, webhook_endpoint, retry_scheduler):
    webhook_endpoint.status_code = 500
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT], max_retries=3)

    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)
    delivery = await persistence.get_delivery(delivery_id)
    assert delivery.status == DeliveryStatus.RETRYING
    assert delivery.next_retry_at is not None

    while retry_scheduler.is_pending(delivery_id):
        await retry_scheduler.fire(delivery_id)

    delivery = await persistence.get_delivery(delivery_id)
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.attempts == 4
    assert delivery.next_retry_at is None
    assert delivery.response["status"] == 500
    assert len(webhook_endpoint.requests) == 4
    assert [delay for _, delay in retry_scheduler.scheduled] == [1, 2, 4]

    stored = await persistence.get_webhook(webhook.id)
    assert stored.retry_count == 4
    assert stored.last_error == "HTTP 500"


async def test_retry_that_succeeds_resets_counter(dispatcher, persistence, webhook_endpoint, retry_scheduler):
    webhook_endpoint.status_code = 503
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT])
    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    webhook_endpoint.status_code = 204
    await retry_scheduler.fire(delivery_id)

    delivery = await persistence.get_delivery(delivery_id)
    assert delivery.status == DeliveryStatus.SUCCESS
    assert delivery.attempts == 2
    assert (await persistence.get_webhook(webhook.id)).retry_count == 0


async def test_client_error_fails_without_retry(dispatcher, persistence, webhook_endpoint, retry_scheduler):
    webhook_endpoint.status_code = 410
    await persistence.create_webhook(OWNER, "https://hooks.example/gone", [EVENT])

    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    delivery = await persistence.get_delivery(delivery_id)
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.attempts == 1
    assert retry_scheduler.scheduled == []


async def test_transport_error_is_retried(dispatcher, persistence, webhook_endpoint, retry_scheduler):
    webhook_endpoint.error = httpx.ConnectError("connection refused")
    await persistence.create_webhook(OWNER, "https://hooks.example/down", [EVENT])

    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    delivery = await persistence.get_delivery(delivery_id)
    assert delivery.status == DeliveryStatus.RETRYING
    assert delivery.response == {"error": "connection refused"}
    assert retry_scheduler.scheduled == [(delivery_id, 1)]


async def test_zero_max_retries_fails_on_first_error(dispatcher, persistence, webhook_endpoint, retry_scheduler):
    webhook_endpoint.status_code = 500
    await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT], max_retries=0)

    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    assert (await persistence.get_delivery(delivery_id)).status == DeliveryStatus.FAILED
    assert retry_scheduler.scheduled == []


async def test_fan_out_creates_one_delivery_per_subscriber(dispatcher, persistence, webhook_endpoint):
    first = await persistence.create_webhook(OWNER, "https://a.example/in", [EVENT])
    second = await persistence.create_webhook(OWNER, "https://b.example/in", ["*"])
    await persistence.create_webhook(OWNER, "https://c.example/in", ["group.updated"])
    removed = await persistence.create_webhook(OWNER, "https://d.example/in", [EVENT])
    await persistence.deactivate_webhook(removed.id, OWNER)

    delivery_ids = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    assert len(delivery_ids) == 2
    assert sorted(str(r.url) for r in webhook_endpoint.requests) == ["https://a.example/in", "https://b.example/in"]
    assert len(await persistence.get_deliveries(first.id)) == 1
    assert len(await persistence.get_deliveries(second.id)) == 1


async def test_retry_after_webhook_removed_fails_delivery(dispatcher, persistence, webhook_endpoint, retry_scheduler):
    webhook_endpoint.status_code = 500
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT])
    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    await persistence.deactivate_webhook(webhook.id, OWNER)
    await retry_scheduler.fire(delivery_id)

    delivery = await persistence.get_delivery(delivery_id)
    assert delivery.status == DeliveryStatus.FAILED
    assert delivery.attempts == 1
    assert len(webhook_endpoint.requests) == 1


async def test_test_webhook(dispatcher, persistence, webhook_endpoint):
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT], secret="k")

    assert await dispatcher.test_webhook(webhook.id, owner_id=OWNER) is True
    request = webhook_endpoint.requests[0]
    assert request.headers["X-Webhook-Event"] == "webhook.test"
    assert "X-Webhook-Delivery" not in request.headers
    assert await persistence.get_deliveries(webhook.id) == []

    webhook_endpoint.status_code = 500
    assert await dispatcher.test_webhook(webhook.id, owner_id=OWNER) is False


async def test_test_webhook_is_owner_scoped(dispatcher, persistence):
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT])

    with pytest.raises(NotFound):
        await dispatcher.test_webhook(webhook.id, owner_id="owner-2")


async def test_manual_retry_requeues_failed_deliveries(dispatcher, persistence, webhook_endpoint):
    webhook_endpoint.status_code = 400
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT])
    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)
    assert (await persistence.get_delivery(delivery_id)).status == DeliveryStatus.FAILED

    webhook_endpoint.status_code = 200
    count = await dispatcher.retry_failed_deliveries(webhook.id, owner_id=OWNER)
    await dispatcher.drain()

    assert count == 1
    delivery = await persistence.get_delivery(delivery_id)
    assert delivery.status == DeliveryStatus.SUCCESS
    assert delivery.attempts == 2


async def test_get_deliveries_returns_dicts(dispatcher, persistence):
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT])
    await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)

    deliveries = await dispatcher.get_deliveries(webhook.id, owner_id=OWNER)

    assert deliveries[0]["event"] == EVENT
    assert deliveries[0]["status"] == "SUCCESS"
    with pytest.raises(NotFound):
        await dispatcher.get_deliveries(webhook.id, owner_id="owner-2")


async def test_cleanup_cancels_pending_retries(dispatcher, persistence, webhook_endpoint, retry_scheduler):
    webhook_endpoint.status_code = 502
    await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT])
    [delivery_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)
    assert retry_scheduler.is_pending(delivery_id)

    await dispatcher.cleanup()

    assert len(retry_scheduler) == 0


async def test_cleanup_purges_deliveries_past_retention(dispatcher, persistence):
    webhook = await persistence.create_webhook(OWNER, "https://hooks.example/in", [EVENT])
    [old_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)
    [fresh_id] = await dispatcher.fan_out(OWNER, EVENT, PAYLOAD)
    backdated = datetime.now(timezone.utc) - timedelta(days=settings.WEBHOOK_RETENTION_DAYS + 1)
    await persistence.update_delivery(old_id, created_at=backdated)

    purged = await dispatcher.cleanup()

    assert purged == 1
    assert await persistence.get_delivery(old_id) is None
    assert await persistence.get_delivery(fresh_id) is not None
    assert [d.id for d in await persistence.get_deliveries(webhook.id)] == [fresh_id]

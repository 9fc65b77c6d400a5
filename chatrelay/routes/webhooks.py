"""
Webhook API routes.

Owners register endpoints for a set of event types (or "*" for all) and can
inspect and retry the resulting deliveries.

SECURITY: every lookup is scoped to the caller's owner id.
"""
from fastapi import APIRouter, Depends, Path, Query, status
from pydantic import AnyHttpUrl, BaseModel, Field, field_validator

from chatrelay.config import settings
from chatrelay.dependencies.rate_limit import check_rate_limit
from chatrelay.dependencies.services import get_dispatcher, get_persistence
from chatrelay.errors import NotFound
from chatrelay.logging_config import get_logger
from chatrelay.models.user import User
from chatrelay.models.webhook import DeliveryStatus, WEBHOOK_EVENTS, WILDCARD_EVENT
from chatrelay.responses import api_response
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.webhook_service import WebhookDispatcher

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(component="webhooks")


def _check_events(events: list[str]) -> list[str]:
    unknown = [e for e in events if e != WILDCARD_EVENT and e not in WEBHOOK_EVENTS]
    if unknown:
        raise ValueError(f"Unknown event types: {', '.join(unknown)}")
    # keep order, drop duplicates
    return list(dict.fromkeys(events))


class CreateWebhookRequest(BaseModel):
    url: AnyHttpUrl
    events: list[str] = Field(..., min_length=1)
    secret: str | None = Field(default=None, max_length=255)
    maxRetries: int | None = Field(default=None, ge=0, le=10)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[str]) -> list[str]:
        return _check_events(value)


class UpdateWebhookRequest(BaseModel):
    url: AnyHttpUrl | None = None
    events: list[str] | None = Field(default=None, min_length=1)
    secret: str | None = Field(default=None, max_length=255)
    maxRetries: int | None = Field(default=None, ge=0, le=10)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[str] | None) -> list[str] | None:
        return _check_events(value) if value is not None else None


@router.get("")
async def list_webhooks(
    user: User = Depends(check_rate_limit),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    webhooks = await persistence.get_owner_webhooks(user.id)
    return api_response([webhook.to_dict() for webhook in webhooks])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    user: User = Depends(check_rate_limit),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    """
    Register a webhook endpoint.

    Deliveries are signed with HMAC-SHA256 over the raw body when a secret is
    set (`X-Webhook-Signature`).
    """
    max_retries = request.maxRetries
    if max_retries is None:
        max_retries = settings.WEBHOOK_DEFAULT_MAX_RETRIES

    webhook = await persistence.create_webhook(
        owner_id=user.id,
        url=str(request.url),
        events=request.events,
        secret=request.secret,
        max_retries=max_retries,
    )
    logger.info("webhook_created", webhook_id=webhook.id, owner_id=user.id, events=request.events)
    return api_response(webhook.to_dict(), message="Webhook created successfully")


@router.patch("/{webhookId}")
async def update_webhook(
    request: UpdateWebhookRequest,
    webhook_id: str = Path(..., alias="webhookId"),
    user: User = Depends(check_rate_limit),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    fields = {}
    if request.url is not None:
        fields["url"] = str(request.url)
    if request.events is not None:
        fields["events"] = request.events
    if "secret" in request.model_fields_set:
        fields["secret"] = request.secret
    if request.maxRetries is not None:
        fields["max_retries"] = request.maxRetries

    webhook = await persistence.update_webhook(webhook_id, user.id, **fields)
    if webhook is None:
        raise NotFound("Webhook not found")
    return api_response(webhook.to_dict(), message="Webhook updated successfully")


@router.delete("/{webhookId}")
async def delete_webhook(
    webhook_id: str = Path(..., alias="webhookId"),
    user: User = Depends(check_rate_limit),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    if not await persistence.deactivate_webhook(webhook_id, user.id):
        raise NotFound("Webhook not found")
    logger.info("webhook_deleted", webhook_id=webhook_id, owner_id=user.id)
    return api_response(message="Webhook deleted successfully")


@router.post("/{webhookId}/test")
async def test_webhook(
    webhook_id: str = Path(..., alias="webhookId"),
    user: User = Depends(check_rate_limit),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    success = await dispatcher.test_webhook(webhook_id, owner_id=user.id)
    message = "Webhook test successful" if success else "Webhook test failed"
    return api_response({"testSuccess": success}, message=message)


@router.get("/{webhookId}/deliveries")
async def list_deliveries(
    webhook_id: str = Path(..., alias="webhookId"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(check_rate_limit),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    deliveries = await dispatcher.get_deliveries(webhook_id, owner_id=user.id, limit=limit, offset=offset)
    return api_response(deliveries)


@router.post("/{webhookId}/retry")
async def retry_failed_deliveries(
    webhook_id: str = Path(..., alias="webhookId"),
    user: User = Depends(check_rate_limit),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Reset the failure counter and re-attempt every FAILED delivery."""
    count = await dispatcher.retry_failed_deliveries(webhook_id, owner_id=user.id)
    return api_response(
        {"retried": count, "status": DeliveryStatus.PENDING.value},
        message=f"{count} deliveries queued for retry",
    )

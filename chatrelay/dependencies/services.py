"""
Service dependencies for FastAPI.

The long-lived services live on `app.state.runtime`; routes reach them
through these dependencies.
"""
from fastapi import Depends, Path, Request

from chatrelay.dependencies.rate_limit import check_rate_limit
from chatrelay.errors import NotFound
from chatrelay.models.user import User
from chatrelay.runtime import Runtime
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.session_registry import SessionRegistry
from chatrelay.services.webhook_service import WebhookDispatcher


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_registry(runtime: Runtime = Depends(get_runtime)) -> SessionRegistry:
    return runtime.registry


def get_persistence(runtime: Runtime = Depends(get_runtime)) -> PersistenceGateway:
    return runtime.persistence


def get_dispatcher(runtime: Runtime = Depends(get_runtime)) -> WebhookDispatcher:
    return runtime.dispatcher


async def get_owned_session_id(
    session_id: str = Path(..., alias="sessionId", min_length=1, max_length=50),
    user: User = Depends(check_rate_limit),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
) -> str:
    """
    Resolve `{sessionId}` to a session owned by the caller.

    Checks the live registry first and falls back to the durable record.
    Sessions of other owners are reported as missing.
    """
    live = registry.get_session(session_id)
    if live is not None:
        if live.owner_id == user.id:
            return session_id
        raise NotFound("Session not found")

    record = await persistence.get_session_record(session_id)
    if record is None or record.owner_id != user.id:
        raise NotFound("Session not found")
    return session_id

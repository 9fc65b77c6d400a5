"""
Contact routes.
"""
from fastapi import APIRouter, Depends, Path, Query

from chatrelay.dependencies.services import get_owned_session_id, get_persistence, get_registry
from chatrelay.responses import api_response
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.session_registry import SessionRegistry

router = APIRouter(prefix="/contacts", tags=["Contacts"])


@router.get("/{sessionId}")
async def list_contacts(
    session_id: str = Depends(get_owned_session_id),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    contacts = await persistence.get_contacts(session_id, limit=limit, offset=offset)
    return api_response([contact.to_dict() for contact in contacts])


@router.get("/{sessionId}/{contactId}/profile-picture")
async def get_profile_picture(
    session_id: str = Depends(get_owned_session_id),
    contact_id: str = Path(..., alias="contactId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    url = await registry.send_command(session_id, lambda client: client.profile_picture_url(contact_id))
    if url:
        await persistence.upsert_contact(session_id, contact_id, profile_pic_url=url)
    return api_response({"profilePicUrl": url})


@router.get("/{sessionId}/{contactId}/presence")
async def subscribe_presence(
    session_id: str = Depends(get_owned_session_id),
    contact_id: str = Path(..., alias="contactId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
):
    """Subscribe to presence updates; they arrive over the WebSocket feed."""
    await registry.send_command(session_id, lambda client: client.presence_subscribe(contact_id))
    return api_response({"contactId": contact_id, "subscribed": True}, message="Presence subscription requested")


@router.post("/{sessionId}/{contactId}/block")
async def block_contact(
    session_id: str = Depends(get_owned_session_id),
    contact_id: str = Path(..., alias="contactId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    await registry.send_command(session_id, lambda client: client.update_block_status(contact_id, "block"))
    await persistence.upsert_contact(session_id, contact_id, is_blocked=True)
    return api_response(message="Contact blocked successfully")


@router.post("/{sessionId}/{contactId}/unblock")
async def unblock_contact(
    session_id: str = Depends(get_owned_session_id),
    contact_id: str = Path(..., alias="contactId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    await registry.send_command(session_id, lambda client: client.update_block_status(contact_id, "unblock"))
    await persistence.upsert_contact(session_id, contact_id, is_blocked=False)
    return api_response(message="Contact unblocked successfully")

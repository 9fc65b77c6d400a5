"""
Chat routes.

Each modification is sent to the client first; the local snapshot is only
updated once the client accepted it.
"""
from fastapi import APIRouter, Depends, Path, Query

from chatrelay.dependencies.services import get_owned_session_id, get_persistence, get_registry
from chatrelay.responses import api_response
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.session_registry import SessionRegistry

router = APIRouter(prefix="/chats", tags=["Chats"])


def is_group_jid(jid: str) -> bool:
    return jid.endswith("@g.us")


async def _modify_chat(
    session_id: str,
    chat_id: str,
    modification: dict,
    registry: SessionRegistry,
    persistence: PersistenceGateway,
    **snapshot_fields,
) -> None:
    await registry.send_command(session_id, lambda client: client.chat_modify(chat_id, modification))
    await persistence.upsert_chat(session_id, chat_id, is_group=is_group_jid(chat_id), **snapshot_fields)


@router.get("/{sessionId}")
async def list_chats(
    session_id: str = Depends(get_owned_session_id),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    chats = await persistence.get_chats(session_id, limit=limit, offset=offset)
    return api_response([chat.to_dict() for chat in chats])


@router.post("/{sessionId}/{chatId}/archive")
async def archive_chat(
    session_id: str = Depends(get_owned_session_id),
    chat_id: str = Path(..., alias="chatId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    await _modify_chat(session_id, chat_id, {"archive": True}, registry, persistence, is_archived=True)
    return api_response(message="Chat archived successfully")


@router.post("/{sessionId}/{chatId}/unarchive")
async def unarchive_chat(
    session_id: str = Depends(get_owned_session_id),
    chat_id: str = Path(..., alias="chatId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    await _modify_chat(session_id, chat_id, {"archive": False}, registry, persistence, is_archived=False)
    return api_response(message="Chat unarchived successfully")


@router.post("/{sessionId}/{chatId}/pin")
async def pin_chat(
    session_id: str = Depends(get_owned_session_id),
    chat_id: str = Path(..., alias="chatId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    await _modify_chat(session_id, chat_id, {"pin": True}, registry, persistence, is_pinned=True)
    return api_response(message="Chat pinned successfully")


@router.post("/{sessionId}/{chatId}/unpin")
async def unpin_chat(
    session_id: str = Depends(get_owned_session_id),
    chat_id: str = Path(..., alias="chatId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    await _modify_chat(session_id, chat_id, {"pin": False}, registry, persistence, is_pinned=False)
    return api_response(message="Chat unpinned successfully")


@router.post("/{sessionId}/{chatId}/mark-read")
async def mark_chat_read(
    session_id: str = Depends(get_owned_session_id),
    chat_id: str = Path(..., alias="chatId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    await _modify_chat(session_id, chat_id, {"markRead": True}, registry, persistence, unread_count=0)
    return api_response(message="Chat marked as read")


@router.delete("/{sessionId}/{chatId}/delete")
async def delete_chat(
    session_id: str = Depends(get_owned_session_id),
    chat_id: str = Path(..., alias="chatId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
):
    """Delete the chat on the device. The local snapshot is kept for history."""
    await registry.send_command(session_id, lambda client: client.chat_modify(chat_id, {"delete": True}))
    return api_response(message="Chat deleted successfully")

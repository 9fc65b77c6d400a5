"""
Group routes.
"""
import enum

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field

from chatrelay.dependencies.services import get_owned_session_id, get_persistence, get_registry
from chatrelay.responses import api_response
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.session_registry import SessionRegistry

router = APIRouter(prefix="/groups", tags=["Groups"])


class ParticipantAction(str, enum.Enum):
    ADD = "add"
    REMOVE = "remove"
    PROMOTE = "promote"
    DEMOTE = "demote"


_ACTION_MESSAGES = {
    ParticipantAction.ADD: "Participants added successfully",
    ParticipantAction.REMOVE: "Participants removed successfully",
    ParticipantAction.PROMOTE: "Participants promoted successfully",
    ParticipantAction.DEMOTE: "Participants demoted successfully",
}


class CreateGroupRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=100)
    participants: list[str] = Field(..., min_length=1)
    description: str | None = Field(default=None, max_length=500)


class ParticipantsRequest(BaseModel):
    participants: list[str] = Field(..., min_length=1)


class SubjectRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=100)


class DescriptionRequest(BaseModel):
    description: str = Field(default="", max_length=500)


@router.post("/{sessionId}/create")
async def create_group(
    request: CreateGroupRequest,
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    """Create a group, set its description if one was given, and store the snapshot."""
    subject = request.subject.strip()
    description = request.description.strip() if request.description else None

    async def create(client):
        group = await client.group_create(subject, request.participants)
        if description:
            await client.group_update_description(group["id"], description)
        return group

    group = await registry.send_command(session_id, create)
    await persistence.upsert_group(
        session_id,
        group["id"],
        subject=group.get("subject", subject),
        description=description,
        participants=group.get("participants", []),
    )
    return api_response(group, message="Group created successfully")


@router.get("/{sessionId}/{groupId}/metadata")
async def get_group_metadata(
    session_id: str = Depends(get_owned_session_id),
    group_id: str = Path(..., alias="groupId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
):
    metadata = await registry.send_command(session_id, lambda client: client.group_metadata(group_id))
    return api_response(metadata)


@router.post("/{sessionId}/{groupId}/participants/{action}")
async def update_participants(
    request: ParticipantsRequest,
    action: ParticipantAction,
    session_id: str = Depends(get_owned_session_id),
    group_id: str = Path(..., alias="groupId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
):
    result = await registry.send_command(
        session_id,
        lambda client: client.group_participants_update(group_id, request.participants, action.value),
    )
    return api_response(result, message=_ACTION_MESSAGES[action])


@router.put("/{sessionId}/{groupId}/subject")
async def update_subject(
    request: SubjectRequest,
    session_id: str = Depends(get_owned_session_id),
    group_id: str = Path(..., alias="groupId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    subject = request.subject.strip()
    await registry.send_command(session_id, lambda client: client.group_update_subject(group_id, subject))
    await persistence.upsert_group(session_id, group_id, subject=subject)
    return api_response(message="Group subject updated successfully")


@router.put("/{sessionId}/{groupId}/description")
async def update_description(
    request: DescriptionRequest,
    session_id: str = Depends(get_owned_session_id),
    group_id: str = Path(..., alias="groupId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    description = request.description.strip()
    await registry.send_command(session_id, lambda client: client.group_update_description(group_id, description))
    await persistence.upsert_group(session_id, group_id, description=description)
    return api_response(message="Group description updated successfully")


@router.post("/{sessionId}/{groupId}/leave")
async def leave_group(
    session_id: str = Depends(get_owned_session_id),
    group_id: str = Path(..., alias="groupId", min_length=1),
    registry: SessionRegistry = Depends(get_registry),
):
    await registry.send_command(session_id, lambda client: client.group_leave(group_id))
    return api_response(message="Left group successfully")

"""
Message routes.

History comes from the database; every send goes through the registry so
it is refused unless the session is CONNECTED.
"""
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, Field

from chatrelay.config import settings
from chatrelay.dependencies.services import get_owned_session_id, get_persistence, get_registry
from chatrelay.errors import ValidationError
from chatrelay.responses import api_response
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.session_registry import SessionRegistry

router = APIRouter(prefix="/messages", tags=["Messages"])

ALLOWED_MEDIA_TYPES = frozenset({
    "image/jpeg", "image/png", "image/gif", "image/webp",
    "video/mp4", "video/mpeg", "video/quicktime",
    "audio/mpeg", "audio/wav", "audio/ogg",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
})


class TextContent(BaseModel):
    text: str = Field(..., min_length=1)


class SendOptions(BaseModel):
    quoted: str | None = None
    mentions: list[str] | None = None


class SendMessageRequest(BaseModel):
    to: str = Field(..., min_length=1)
    content: TextContent
    options: SendOptions | None = None


class SendLocationRequest(BaseModel):
    to: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    name: str | None = None
    address: str | None = None


class SendReactionRequest(BaseModel):
    to: str = Field(..., min_length=1)
    messageId: str = Field(..., min_length=1)
    emoji: str = Field(..., min_length=1)


def build_text_content(request: SendMessageRequest) -> dict:
    content: dict = {"text": request.content.text.strip()}
    options = request.options
    if options is not None:
        if options.quoted:
            content["quoted"] = options.quoted
        if options.mentions:
            content["mentions"] = options.mentions
    return content


def build_media_content(data: bytes, mimetype: str, file_name: str, caption: str | None = None) -> dict:
    """Map an upload to the client's media payload by MIME family."""
    if mimetype.startswith("image/"):
        return {"image": data, "caption": caption, "fileName": file_name}
    if mimetype.startswith("video/"):
        return {"video": data, "caption": caption, "fileName": file_name}
    if mimetype.startswith("audio/"):
        return {"audio": data, "fileName": file_name, "mimetype": mimetype}
    return {"document": data, "fileName": file_name, "mimetype": mimetype}


@router.get("/{sessionId}")
async def list_messages(
    session_id: str = Depends(get_owned_session_id),
    chat_id: str | None = Query(default=None, alias="chatId"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    messages = await persistence.get_messages(session_id, chat_id=chat_id, limit=limit, offset=offset)
    return api_response([message.to_dict() for message in messages])


@router.post("/{sessionId}/send")
async def send_message(
    request: SendMessageRequest,
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
):
    content = build_text_content(request)
    result = await registry.send_command(
        session_id,
        lambda client: client.send_message(request.to.strip(), content),
    )
    return api_response(result, message="Message sent successfully")


@router.post("/{sessionId}/send-media")
async def send_media(
    session_id: str = Depends(get_owned_session_id),
    to: str = Form(..., min_length=1),
    caption: str | None = Form(default=None),
    file_name: str | None = Form(default=None, alias="fileName"),
    file: UploadFile | None = File(default=None),
    registry: SessionRegistry = Depends(get_registry),
):
    """Send an uploaded image, video, audio clip or document."""
    if file is None:
        raise ValidationError("No file uploaded", [{"field": "file", "message": "File is required", "value": None}])

    mimetype = file.content_type or "application/octet-stream"
    if mimetype not in ALLOWED_MEDIA_TYPES:
        raise ValidationError(
            "File type not supported",
            [{"field": "file", "message": "File type not supported", "value": mimetype}],
        )

    max_bytes = settings.MAX_FILE_SIZE_MB * 1024 * 1024
    data = await file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ValidationError(
            "File too large",
            [{"field": "file", "message": f"File exceeds {settings.MAX_FILE_SIZE_MB} MB", "value": file.filename}],
        )

    content = build_media_content(
        data,
        mimetype,
        file_name=(file_name or file.filename or "file").strip(),
        caption=caption.strip() if caption else None,
    )
    result = await registry.send_command(
        session_id,
        lambda client: client.send_message(to.strip(), content),
    )
    return api_response(result, message="Media message sent successfully")


@router.post("/{sessionId}/send-location")
async def send_location(
    request: SendLocationRequest,
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
):
    content = {
        "location": {
            "degreesLatitude": request.latitude,
            "degreesLongitude": request.longitude,
            "name": request.name,
            "address": request.address,
        }
    }
    result = await registry.send_command(
        session_id,
        lambda client: client.send_message(request.to.strip(), content),
    )
    return api_response(result, message="Location message sent successfully")


@router.post("/{sessionId}/send-reaction")
async def send_reaction(
    request: SendReactionRequest,
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
):
    to = request.to.strip()
    content = {
        "react": {
            "text": request.emoji,
            "key": {"remoteJid": to, "id": request.messageId},
        }
    }
    result = await registry.send_command(
        session_id,
        lambda client: client.send_message(to, content),
    )
    return api_response(result, message="Reaction sent successfully")

"""
Session routes.

Live state comes from the registry; the durable record fills in sessions
that are not live (e.g. after a failed restore). Live status wins when both
exist.
"""
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from chatrelay.dependencies.rate_limit import check_rate_limit
from chatrelay.dependencies.services import get_owned_session_id, get_persistence, get_registry
from chatrelay.errors import NotFound
from chatrelay.models.session import SessionRecord
from chatrelay.models.user import User
from chatrelay.responses import api_response
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.session_registry import Session, SessionRegistry

router = APIRouter(prefix="/sessions", tags=["Sessions"])

# session ids name a directory on disk
SESSION_ID_PATTERN = r"^[A-Za-z0-9_.-]+$"


class CreateSessionRequest(BaseModel):
    sessionId: str = Field(..., min_length=1, max_length=50, pattern=SESSION_ID_PATTERN)
    usePairingCode: bool = False


class PairingCodeRequest(BaseModel):
    phoneNumber: str = Field(..., min_length=5, max_length=20, pattern=r"^\+?[0-9]+$")


def _record_view(record: SessionRecord) -> dict:
    return {
        "sessionId": record.session_id,
        "status": record.status.value,
        "usePairingCode": False,
        "qrCode": record.qr_code,
        "pairingCode": record.pairing_code,
        "phoneNumber": record.phone_number,
        "displayName": record.display_name,
        "lastSeen": record.last_seen.isoformat() if record.last_seen else None,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


async def _resolve(session_id: str, registry: SessionRegistry, persistence: PersistenceGateway) -> dict:
    live: Session | None = registry.get_session(session_id)
    if live is not None:
        return live.to_dict()
    record = await persistence.get_session_record(session_id)
    if record is None:
        raise NotFound("Session not found")
    return _record_view(record)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_session(
    request: CreateSessionRequest,
    user: User = Depends(check_rate_limit),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Create a session and start connecting it.

    The response returns immediately in CONNECTING; the QR code or pairing
    state follows over the WebSocket feed or `GET /sessions/{id}/qr`.
    """
    session = await registry.create_session(
        request.sessionId,
        owner_id=user.id,
        use_pairing_code=request.usePairingCode,
    )
    return api_response(session.to_dict(), message="Session created successfully")


@router.get("")
async def list_sessions(
    user: User = Depends(check_rate_limit),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    sessions = {s.session_id: s.to_dict() for s in registry.list_sessions(user.id)}
    for record in await persistence.get_session_records(owner_id=user.id):
        sessions.setdefault(record.session_id, _record_view(record))
    return api_response(list(sessions.values()))


@router.get("/{sessionId}")
async def get_session(
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    return api_response(await _resolve(session_id, registry, persistence))


@router.delete("/{sessionId}")
async def delete_session(
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
):
    await registry.delete_session(session_id)
    return api_response(message="Session deleted successfully")


@router.get("/{sessionId}/qr")
async def get_qr_code(
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    """Current QR data URL. 404 while the session is not waiting for a scan."""
    session = await _resolve(session_id, registry, persistence)
    if not session["qrCode"]:
        raise NotFound("QR code not available")
    return api_response({"qrCode": session["qrCode"], "status": session["status"]})


@router.post("/{sessionId}/pairing-code")
async def request_pairing_code(
    request: PairingCodeRequest,
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
):
    phone_number = request.phoneNumber.lstrip("+")
    code = await registry.request_pairing_code(session_id, phone_number)
    return api_response({"pairingCode": code, "phoneNumber": phone_number})


@router.get("/{sessionId}/status")
async def get_session_status(
    session_id: str = Depends(get_owned_session_id),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    session = await _resolve(session_id, registry, persistence)
    return api_response({
        "sessionId": session["sessionId"],
        "status": session["status"],
        "phoneNumber": session["phoneNumber"],
        "displayName": session["displayName"],
        "lastSeen": session["lastSeen"],
    })


@router.post("/{sessionId}/restart")
async def restart_session(
    session_id: str = Depends(get_owned_session_id),
    user: User = Depends(check_rate_limit),
    registry: SessionRegistry = Depends(get_registry),
):
    session = await registry.restart_session(session_id, owner_id=user.id)
    return api_response(session.to_dict(), message="Session restarted")

"""
Dashboard routes: per-owner usage counts and session overview.
"""
from fastapi import APIRouter, Depends

from chatrelay.dependencies.rate_limit import check_rate_limit
from chatrelay.dependencies.services import get_persistence, get_registry
from chatrelay.models.user import User
from chatrelay.responses import api_response
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.session_registry import SessionRegistry

router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


@router.get("/stats")
async def get_stats(
    user: User = Depends(check_rate_limit),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    stats = await persistence.get_owner_stats(user.id)
    live = registry.stats_snapshot(user.id)
    stats["totalSessions"] = len(await persistence.get_session_records(owner_id=user.id))
    stats["liveSessions"] = live["total"]
    stats["connectedSessions"] = live["connected"]
    stats["sessionsByStatus"] = live["byStatus"]
    return api_response(stats)


@router.get("/sessions")
async def get_sessions(
    user: User = Depends(check_rate_limit),
    registry: SessionRegistry = Depends(get_registry),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    """Durable session records with the live status laid over them."""
    sessions = []
    for record in await persistence.get_session_records(owner_id=user.id):
        live = registry.get_session(record.session_id)
        sessions.append({
            "sessionId": record.session_id,
            "status": (live.status if live else record.status).value,
            "phoneNumber": live.phone_number if live and live.phone_number else record.phone_number,
            "displayName": live.display_name if live and live.display_name else record.display_name,
            "lastSeen": record.last_seen.isoformat() if record.last_seen else None,
            "createdAt": record.created_at.isoformat() if record.created_at else None,
        })
    return api_response(sessions)

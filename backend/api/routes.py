"""REST API routes for RyFlow Link."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_relay_manager = None


def init_routes(discovery_service, relay_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _relay_manager
    _discovery_service = discovery_service
    _relay_manager = relay_manager


# --- Peer Discovery ---

@router.get("/peers")
async def list_peers():
    """Return list of discovered LAN peers."""
    peers = _discovery_service.list_peers()
    return {"peers": [p.model_dump() for p in peers]}


@router.get("/discovery")
async def discovery_status():
    """Return whether LAN discovery is live or running standalone."""
    return _discovery_service.status().model_dump()


# --- Relay ---

@router.get("/rooms/{room_id}")
async def room_presence(room_id: str):
    """Return the presence list of a workspace room."""
    members = _relay_manager.room_members(room_id)
    return {
        "room_id": room_id,
        "members": [m.to_wire() for m in members],
    }


@router.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "connections": _relay_manager.connection_count,
    }

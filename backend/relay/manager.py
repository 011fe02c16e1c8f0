"""
Realtime relay: per-room presence and signaling fan-out.

Each WebSocket connection moves through ``connected -> joined(room) ->
closed``. Room membership is never stored on its own; it is derived by
filtering the connection table on ``room_id``, so a client that re-joins
a different room simply stops matching the old one.

Delivery is best-effort and at-most-once. ``doc-update`` payloads are
forwarded verbatim with no ordering or causality metadata; concurrent
edits reach members in whatever order the transport delivers them, and
conflict resolution is left to the clients.
"""

import asyncio
import json
import logging
import uuid
from typing import Any

from pydantic import ValidationError

from relay.models import (
    ConnectedClient,
    CursorUpdate,
    DocUpdate,
    Envelope,
    JoinWorkspace,
    Presence,
    SignalAnswer,
    SignalIce,
    SignalOffer,
)

logger = logging.getLogger(__name__)

PRESENCE_UPDATE = "presence-update"
CONNECTED = "connected"


class RelayManager:
    """Owns the connection table and relays events between its members."""

    def __init__(self) -> None:
        self._clients: dict[str, ConnectedClient] = {}
        self._lock = asyncio.Lock()
        self._handlers = {
            "join-workspace": self._on_join,
            "signal-offer": self._on_signal_offer,
            "signal-answer": self._on_signal_answer,
            "signal-ice": self._on_signal_ice,
            "cursor-update": self._on_cursor_update,
            "doc-update": self._on_doc_update,
        }

    @property
    def connection_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket) -> str:
        """Accept a WebSocket and register it. Returns its connection id."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        async with self._lock:
            self._clients[connection_id] = ConnectedClient(connection_id, websocket)
        logger.info(f"User connected: {connection_id}. Total: {len(self._clients)}")

        await self._send(connection_id, websocket, CONNECTED, {"connectionId": connection_id})
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Deregister a connection and refresh presence for its last room."""
        async with self._lock:
            client = self._clients.pop(connection_id, None)
            room_id = client.room_id if client else None
            members = self._members(room_id) if room_id is not None else []

        if client is None:
            return
        if room_id is None:
            logger.info(f"User disconnected: {connection_id}")
            return

        logger.info(f"{client.presence.user_name} disconnected from workspace {room_id}")
        await self._fan_out(members, PRESENCE_UPDATE, self._presence_list(members))

    def room_members(self, room_id: str | int) -> list[Presence]:
        """Presence snapshot for ``room_id``."""
        return [c.presence.model_copy() for c in self._members(room_id)]

    async def handle_message(self, connection_id: str, raw: str | bytes) -> None:
        """Decode one frame and dispatch it. Malformed frames are dropped."""
        try:
            envelope = Envelope.model_validate(json.loads(raw))
        # ValueError covers bad JSON and bytes that are not UTF-8
        except (ValueError, RecursionError, ValidationError, TypeError) as e:
            logger.debug(f"Ignoring malformed frame from {connection_id}: {e}")
            return
        await self.dispatch(connection_id, envelope.event, envelope.data)

    async def dispatch(self, connection_id: str, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring unknown event {event!r} from {connection_id}")
            return
        if connection_id not in self._clients:
            return
        try:
            await handler(connection_id, data or {})
        except ValidationError as e:
            logger.debug(f"Ignoring invalid {event} from {connection_id}: {e.error_count()} error(s)")

    # --- Event handlers ---

    async def _on_join(self, connection_id: str, data: Any) -> None:
        body = JoinWorkspace.model_validate(data)
        presence = Presence(
            workspace_id=body.workspace_id,
            user_name=body.user_name,
            user_id=body.user_id,
            avatar_color=body.avatar_color,
        )
        async with self._lock:
            client = self._clients.get(connection_id)
            if client is None:
                return
            # Last write wins; the old room drops us on its next filter.
            client.presence = presence
            members = self._members(body.workspace_id)

        logger.info(f"{body.user_name} joined workspace {body.workspace_id}")
        await self._fan_out(members, PRESENCE_UPDATE, self._presence_list(members))

    async def _on_signal_offer(self, connection_id: str, data: Any) -> None:
        body = SignalOffer.model_validate(data)
        await self._unicast(body.target_id, "signal-offer", {
            "offer": body.offer,
            "from": connection_id,
            "fromName": body.from_label,
        })

    async def _on_signal_answer(self, connection_id: str, data: Any) -> None:
        body = SignalAnswer.model_validate(data)
        await self._unicast(body.target_id, "signal-answer", {
            "answer": body.answer,
            "from": connection_id,
        })

    async def _on_signal_ice(self, connection_id: str, data: Any) -> None:
        body = SignalIce.model_validate(data)
        await self._unicast(body.target_id, "signal-ice", {
            "candidate": body.candidate,
            "from": connection_id,
        })

    async def _on_cursor_update(self, connection_id: str, data: Any) -> None:
        body = CursorUpdate.model_validate(data)
        await self._to_room(body.workspace_id, connection_id, "cursor-update", {
            "userId": connection_id,
            "position": body.position,
            "userName": body.user_name,
            "avatarColor": body.avatar_color,
        })

    async def _on_doc_update(self, connection_id: str, data: Any) -> None:
        body = DocUpdate.model_validate(data)
        await self._to_room(body.workspace_id, connection_id, "doc-update", {
            "docId": body.doc_id,
            "update": body.update,
            "from": connection_id,
        })

    # --- Delivery ---

    def _members(self, room_id: str | int) -> list[ConnectedClient]:
        return [c for c in self._clients.values() if c.room_id == room_id]

    @staticmethod
    def _presence_list(members: list[ConnectedClient]) -> list[dict]:
        return [c.presence.to_wire() for c in members]

    async def _unicast(self, target_id: str, event: str, data: dict) -> None:
        target = self._clients.get(target_id)
        if target is None:
            logger.debug(f"Dropping {event} for absent connection {target_id}")
            return
        await self._send(target_id, target.websocket, event, data)

    async def _to_room(self, room_id: str | int, sender_id: str, event: str, data: dict) -> None:
        """Send to every member of ``room_id`` except the sender."""
        async with self._lock:
            members = [c for c in self._members(room_id) if c.connection_id != sender_id]
        await self._fan_out(members, event, data)

    async def _fan_out(self, members: list[ConnectedClient], event: str, data: Any) -> None:
        message = json.dumps({"event": event, "data": data})
        for client in members:
            await self._send_raw(client.connection_id, client.websocket, message)

    async def _send(self, connection_id: str, websocket, event: str, data: Any) -> None:
        await self._send_raw(connection_id, websocket, json.dumps({"event": event, "data": data}))

    async def _send_raw(self, connection_id: str, websocket, message: str) -> None:
        # A dead socket is cleaned up by its own receive loop.
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.debug(f"Send to {connection_id} failed: {e}")

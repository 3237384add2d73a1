# ============================================================================
# Lab2Home Chat — WebSocket Rooms
# ============================================================================
# One broadcast room per conversation. Connections join rooms explicitly.
# Fan-out is best effort: no acknowledgement, no retry.
# ============================================================================

from fastapi import WebSocket
from typing import Dict, Set, Optional, Tuple
import asyncio
import logging
from datetime import datetime, timezone

from .models import ParticipantRole

logger = logging.getLogger(__name__)


class ConversationRooms:
    """
    Manages WebSocket connections and conversation rooms.

    - Per-connection identity (participant id + role)
    - Explicit join/leave per conversation
    - Emit to every connection in a room (sender's other sessions included)
    - Presence lookup for the best-effort "delivered" status
    """

    def __init__(self):
        # WebSocket -> (participant_id, role)
        self._identities: Dict[WebSocket, Tuple[str, ParticipantRole]] = {}
        # conversation_id -> set of WebSocket connections
        self._rooms: Dict[int, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, participant_id: str, role: ParticipantRole):
        """Accept and register a connection."""
        await websocket.accept()
        async with self._lock:
            self._identities[websocket] = (participant_id, role)

        logger.info(f"[WS] {role.value} {participant_id} connected. Total connections: {len(self._identities)}")

        await self._send_to_websocket(websocket, {
            "type": "connected",
            "user_id": participant_id,
            "user_type": role.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def disconnect(self, websocket: WebSocket):
        """Drop a connection from every room it joined."""
        async with self._lock:
            identity = self._identities.pop(websocket, None)
            for conversation_id in list(self._rooms):
                members = self._rooms[conversation_id]
                members.discard(websocket)
                if not members:
                    del self._rooms[conversation_id]

        if identity:
            logger.info(f"[WS] {identity[1].value} {identity[0]} disconnected. Total connections: {len(self._identities)}")

    def identity(self, websocket: WebSocket) -> Optional[Tuple[str, ParticipantRole]]:
        return self._identities.get(websocket)

    # ---- Rooms ----

    async def join(self, websocket: WebSocket, conversation_id: int):
        async with self._lock:
            self._rooms.setdefault(conversation_id, set()).add(websocket)

    async def leave(self, websocket: WebSocket, conversation_id: int):
        async with self._lock:
            members = self._rooms.get(conversation_id)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self._rooms[conversation_id]

    def room_size(self, conversation_id: int) -> int:
        return len(self._rooms.get(conversation_id, ()))

    def room_has_role(self, conversation_id: int, role: ParticipantRole) -> bool:
        """Is any connection of `role` currently viewing this conversation?"""
        for ws in self._rooms.get(conversation_id, ()):
            identity = self._identities.get(ws)
            if identity and identity[1] is ParticipantRole(role):
                return True
        return False

    # ---- Core Send ----

    async def _send_to_websocket(self, ws: WebSocket, data: Dict) -> bool:
        try:
            await ws.send_json(data)
            return True
        except Exception as e:
            logger.warning(f"[WS] Send failed: {e}")
            return False

    async def emit_to_room(self, conversation_id: int, event_type: str, data: Dict) -> int:
        """Send an event to every connection in a conversation room."""
        message = {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **data
        }

        async with self._lock:
            members = list(self._rooms.get(conversation_id, ()))

        sent_count = 0
        failed = []
        for ws in members:
            if await self._send_to_websocket(ws, message):
                sent_count += 1
            else:
                failed.append(ws)

        for ws in failed:
            await self.disconnect(ws)

        return sent_count

    # ---- WebSocket Message Handler ----

    async def handle_client_message(self, websocket: WebSocket, data: Dict):
        """Route incoming frames: join_conversation, leave_conversation, ping."""
        msg_type = data.get("type")
        identity = self.identity(websocket)
        if identity is None:
            return

        if msg_type == "ping":
            await self._send_to_websocket(websocket, {"type": "pong"})

        elif msg_type == "join_conversation":
            conversation_id = _conversation_id(data)
            if conversation_id is None:
                await self._send_error(websocket, "bad_request", "conversation_id required")
                return
            from .chat_engine import get_chat_engine
            from .errors import ChatError
            try:
                get_chat_engine().require_participant(conversation_id, identity[0], identity[1])
            except ChatError as e:
                await self._send_error(websocket, e.code, e.detail, conversation_id)
                return
            await self.join(websocket, conversation_id)
            logger.info(f"[WS] {identity[1].value} {identity[0]} joined conversation {conversation_id}")
            await self._send_to_websocket(websocket, {"type": "joined", "conversation_id": conversation_id})

        elif msg_type == "leave_conversation":
            conversation_id = _conversation_id(data)
            if conversation_id is not None:
                await self.leave(websocket, conversation_id)
                await self._send_to_websocket(websocket, {"type": "left", "conversation_id": conversation_id})

        else:
            await self._send_error(websocket, "unknown_event", f"Unsupported event: {msg_type}")

    async def _send_error(self, websocket: WebSocket, code: str, detail: str, conversation_id: int = None):
        await self._send_to_websocket(websocket, {
            "type": "error", "error": code, "detail": detail, "conversation_id": conversation_id
        })


def _conversation_id(data: Dict) -> Optional[int]:
    value = data.get("conversation_id", data.get("conversationId"))
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# Singleton instance
_broadcaster = None


def get_broadcaster() -> ConversationRooms:
    """Get or create the singleton room broadcaster."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = ConversationRooms()
    return _broadcaster

# ============================================================================
# Lab2Home Chat Module
# ============================================================================
# Patient/lab and phlebotomist/lab conversations:
# - Conversation store (one conversation per participant pair)
# - Append-only message log with attachments
# - Read tracking and per-role unread counters
# - One-way lock when a booking's report is uploaded
# - WebSocket rooms for new_message / messages_read / conversation_locked
# ============================================================================

from .models import init_chat_schema, ParticipantRole, MessageStatus
from .chat_routes import register_chat_routes
from .websocket import ConversationRooms, get_broadcaster
from .chat_engine import ChatEngine, get_chat_engine
from .errors import (
    ChatError, InvalidParticipantPair, EmptyMessage, ConversationLocked, NotFound, Forbidden
)

__all__ = [
    "init_chat_schema",
    "ParticipantRole",
    "MessageStatus",
    "register_chat_routes",
    "ConversationRooms",
    "get_broadcaster",
    "ChatEngine",
    "get_chat_engine",
    "ChatError",
    "InvalidParticipantPair",
    "EmptyMessage",
    "ConversationLocked",
    "NotFound",
    "Forbidden",
]

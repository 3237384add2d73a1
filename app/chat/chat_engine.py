# ============================================================================
# Lab2Home Chat Engine — Core Business Logic
# ============================================================================
# Conversation store, message log, read tracking, lock gate and attachment
# resolution. Real-time fan-out is best effort; sqlite state is authoritative.
# ============================================================================

import sqlite3
import asyncio
import logging
from typing import List, Dict, Any, Tuple

from .errors import (
    ConversationLocked, EmptyMessage, Forbidden, InvalidParticipantPair, NotFound
)
from .models import (
    _ts, ParticipantRole, MessageStatus, parse_role, validate_pair, make_pair_key,
    unread_column, conversation_to_dict, get_conversation_row,
    find_conversation_by_pair, insert_conversation, attach_booking,
    get_participant_conversations, get_booking_conversation_ids, is_participant,
    other_participant, insert_chat_message, insert_attachments, get_message,
    get_chat_messages, get_attachment_blob, mark_messages_read,
    advance_message_status, recount_unread, insert_notification, get_notifications,
    mark_notification_read
)

logger = logging.getLogger(__name__)

EVENT_NEW_MESSAGE = "new_message"
EVENT_MESSAGES_READ = "messages_read"
EVENT_CONVERSATION_LOCKED = "conversation_locked"


class ChatEngine:
    """
    Core chat engine for patient/lab and phlebotomist/lab conversations.

    Usage:
        engine = ChatEngine(get_conn)
        conv = engine.get_or_create_conversation("P1", "patient", "L1", "lab")
        msg = engine.send_message(conv["id"], "patient", "P1", content="Hello")
        engine.mark_conversation_read(conv["id"], "lab")
        engine.lock_conversation(conv["id"])
    """

    def __init__(self, get_conn, broadcaster=None):
        """
        Args:
            get_conn: Callable that returns a sqlite3.Connection (row_factory set).
            broadcaster: Optional room broadcaster; defaults to the process singleton.
        """
        self._get_conn = get_conn
        self._broadcaster = broadcaster
        self._pending = set()

    def _conn(self) -> sqlite3.Connection:
        return self._get_conn()

    def get_broadcaster(self):
        if self._broadcaster is None:
            from .websocket import get_broadcaster
            self._broadcaster = get_broadcaster()
        return self._broadcaster

    # ---- Conversation Store ----

    def get_or_create_conversation(
        self,
        participant_a: str,
        role_a,
        participant_b: str,
        role_b,
        booking_id: str = None
    ) -> Dict:
        """Return the conversation for this unordered pair, creating it on first contact."""
        role_a, role_b = parse_role(role_a), parse_role(role_b)
        validate_pair(role_a, role_b)
        if not participant_a or not participant_b:
            raise InvalidParticipantPair("Both participants need an id")

        key = make_pair_key(participant_a, role_a, participant_b, role_b)
        conn = self._conn()
        try:
            row = find_conversation_by_pair(conn, key)
            if row is None:
                try:
                    insert_conversation(
                        conn, key,
                        {role_a: str(participant_a), role_b: str(participant_b)},
                        booking_id=booking_id
                    )
                    logger.info(f"[CHAT] Created conversation {key}")
                except sqlite3.IntegrityError:
                    # Lost the first-contact race; the other side created it
                    conn.rollback()
                    logger.info(f"[CHAT] Conversation {key} created concurrently, reusing")
                row = find_conversation_by_pair(conn, key)
            elif booking_id and row["booking_id"] is None:
                attach_booking(conn, row["id"], booking_id)
                row = find_conversation_by_pair(conn, key)
            return conversation_to_dict(row)
        finally:
            conn.close()

    def get_conversation(self, conversation_id: int) -> Dict:
        """Get a conversation by ID or raise NotFound."""
        conn = self._conn()
        try:
            row = get_conversation_row(conn, conversation_id)
        finally:
            conn.close()
        if row is None:
            raise NotFound("Conversation not found")
        return conversation_to_dict(row)

    def require_participant(self, conversation_id: int, participant_id: str, role) -> Dict:
        """Return the conversation if the caller takes part in it, else raise Forbidden."""
        conversation = self.get_conversation(conversation_id)
        if not is_participant(conversation, participant_id, parse_role(role)):
            raise Forbidden("Not authorized for this conversation")
        return conversation

    def list_conversations(self, participant_id: str, role) -> List[Dict]:
        """All conversations for a participant, most recent activity first."""
        conn = self._conn()
        try:
            return get_participant_conversations(conn, participant_id, parse_role(role))
        finally:
            conn.close()

    # ---- Message Log ----

    def send_message(
        self,
        conversation_id: int,
        sender_role,
        sender_id: str,
        content: str = None,
        attachments: List[Dict] = None
    ) -> Dict:
        """
        Append a message and notify the conversation room.

        attachments: list of {"filename", "content_type", "data"} dicts.
        Raises NotFound, Forbidden, EmptyMessage or ConversationLocked.
        """
        sender_role = parse_role(sender_role)
        content = (content or "").strip() or None
        attachments = attachments or []

        conversation = self.require_participant(conversation_id, sender_id, sender_role)
        if content is None and not attachments:
            raise EmptyMessage("Message content or an attachment is required")

        conn = self._conn()
        try:
            c = conn.cursor()
            # Lock check and append share one write transaction
            c.execute("BEGIN IMMEDIATE")
            try:
                row = c.execute(
                    "SELECT locked, last_message_at FROM chat_conversations WHERE id = ?",
                    (conversation_id,)
                ).fetchone()
                if row["locked"]:
                    raise ConversationLocked()

                now = _ts()
                created_at = max(now, row["last_message_at"] or now)
                message_id = insert_chat_message(c, conversation_id, sender_role, sender_id,
                                                 content, created_at)
                insert_attachments(c, message_id, attachments, created_at)

                preview = content or "Attachment"
                recipient = other_participant(conversation, sender_role)
                if recipient:
                    col = unread_column(recipient[0])
                    c.execute(f"""
                        UPDATE chat_conversations
                        SET last_message = ?, last_message_at = ?, {col} = {col} + 1, updated_at = ?
                        WHERE id = ?
                    """, (preview, created_at, now, conversation_id))
                conn.commit()
            except Exception:
                conn.rollback()
                raise

            if recipient and self._recipient_in_room(conversation_id, recipient[0]):
                advance_message_status(conn, message_id, MessageStatus.DELIVERED)

            msg = get_message(conn, message_id)
        finally:
            conn.close()

        logger.info(f"[CHAT] Message {message_id} ({sender_role.value}) -> conversation {conversation_id}")

        if recipient:
            self._notify_recipient(recipient, conversation_id, message_id, sender_role)
        self._broadcast(conversation_id, EVENT_NEW_MESSAGE, {"message": msg})
        return msg

    def get_messages(self, conversation_id: int) -> List[Dict]:
        """Messages oldest first; attachment metadata only."""
        conn = self._conn()
        try:
            if get_conversation_row(conn, conversation_id) is None:
                raise NotFound("Conversation not found")
            return get_chat_messages(conn, conversation_id)
        finally:
            conn.close()

    def _recipient_in_room(self, conversation_id: int, role: ParticipantRole) -> bool:
        try:
            return self.get_broadcaster().room_has_role(conversation_id, role)
        except Exception as e:
            logger.warning(f"[CHAT] Presence lookup failed: {e}")
            return False

    def _notify_recipient(self, recipient: Tuple[ParticipantRole, str], conversation_id: int,
                          message_id: int, sender_role: ParticipantRole):
        role, recipient_id = recipient
        conn = self._conn()
        try:
            insert_notification(conn, recipient_id, role, conversation_id, message_id, sender_role)
        except Exception as e:
            logger.warning(f"[CHAT] Failed to create message notification: {e}")
        finally:
            conn.close()

    # ---- Delivery / Read Tracker ----

    def mark_conversation_read(self, conversation_id: int, reader_role) -> Dict:
        """Mark every message from the other side read and zero the reader's counter."""
        reader_role = parse_role(reader_role)
        conn = self._conn()
        try:
            c = conn.cursor()
            c.execute("BEGIN IMMEDIATE")
            try:
                if get_conversation_row(conn, conversation_id) is None:
                    raise NotFound("Conversation not found")
                now = _ts()
                count = mark_messages_read(c, conversation_id, reader_role, now)
                recount_unread(c, conversation_id, now)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            conversation = conversation_to_dict(get_conversation_row(conn, conversation_id))
        finally:
            conn.close()

        if count:
            logger.info(f"[CHAT] {count} message(s) read by {reader_role.value} in conversation {conversation_id}")
        self._broadcast(conversation_id, EVENT_MESSAGES_READ, {
            "conversationId": conversation_id,
            "readerRole": reader_role.value,
        })
        return conversation

    def mark_delivered(self, message_id: int) -> bool:
        """Best-effort sent -> delivered. No-op for delivered/read messages."""
        conn = self._conn()
        try:
            return advance_message_status(conn, message_id, MessageStatus.DELIVERED)
        finally:
            conn.close()

    # ---- Lock Gate ----

    def lock_conversation(self, conversation_id: int) -> Dict:
        """One-way lock. Locking a locked conversation is a no-op."""
        conn = self._conn()
        try:
            c = conn.cursor()
            now = _ts()
            c.execute("""
                UPDATE chat_conversations SET locked = 1, locked_at = ?, updated_at = ?
                WHERE id = ? AND locked = 0
            """, (now, now, conversation_id))
            changed = c.rowcount > 0
            conn.commit()
            row = get_conversation_row(conn, conversation_id)
        finally:
            conn.close()

        if row is None:
            raise NotFound("Conversation not found")
        if changed:
            logger.info(f"[CHAT] Conversation {conversation_id} locked")
            self._broadcast(conversation_id, EVENT_CONVERSATION_LOCKED, {
                "conversationId": conversation_id,
                "message": "Report has been uploaded. This conversation is now read-only.",
            })
        return conversation_to_dict(row)

    def lock_booking(self, booking_id: str, lab_id: str = None) -> List[Dict]:
        """Lock every conversation linked to a booking (report upload), optionally only one lab's."""
        conn = self._conn()
        try:
            ids = get_booking_conversation_ids(conn, booking_id, lab_id)
        finally:
            conn.close()
        locked = [self.lock_conversation(cid) for cid in ids]
        logger.info(f"[CHAT] Locked {len(locked)} conversation(s) for booking {booking_id}")
        return locked

    # ---- Attachment Resolver ----

    def resolve_attachment(self, message_id: int, index: int, participant_id: str, role) -> Dict:
        """
        Return {"data", "content_type", "filename", "size"} for an attachment.

        The requester must be a participant of the message's conversation.
        """
        role = parse_role(role)
        conn = self._conn()
        try:
            msg = get_message(conn, message_id)
            if msg is None:
                raise NotFound("Attachment not found")
            row = get_conversation_row(conn, msg["conversation_id"])
            if row is None or not is_participant(dict(row), participant_id, role):
                raise Forbidden("Not authorized to view this attachment")
            if index < 0:
                raise NotFound("Attachment not found")
            blob = get_attachment_blob(conn, message_id, index)
        finally:
            conn.close()
        if blob is None:
            raise NotFound("Attachment not found")
        return blob

    # ---- Notifications ----

    def get_notifications(self, participant_id: str, role, unread_only: bool = False) -> List[Dict]:
        conn = self._conn()
        try:
            return get_notifications(conn, participant_id, parse_role(role), unread_only)
        finally:
            conn.close()

    def mark_notification_read(self, notification_id: int, participant_id: str, role) -> bool:
        conn = self._conn()
        try:
            return mark_notification_read(conn, notification_id, participant_id, parse_role(role))
        finally:
            conn.close()

    # ---- Real-time ----

    def _broadcast(self, conversation_id: int, event_type: str, payload: Dict[str, Any]):
        """Fan an event out to the conversation room (fire and forget)."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop; clients reconcile on next fetch
            return
        broadcaster = self.get_broadcaster()
        task = loop.create_task(broadcaster.emit_to_room(conversation_id, event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


# Singleton engine instance
_chat_engine = None


def get_chat_engine(get_conn=None) -> ChatEngine:
    """Get or create the singleton ChatEngine instance."""
    global _chat_engine
    if _chat_engine is None:
        if get_conn is None:
            raise RuntimeError("ChatEngine not initialized; pass get_conn on first call")
        _chat_engine = ChatEngine(get_conn)
    return _chat_engine

# ============================================================================
# Lab2Home Chat — Database Models & Schema
# ============================================================================
# Conversations (patient<->lab, phlebotomist<->lab), append-only messages,
# attachment blobs, and per-recipient in-app notifications.
# ============================================================================

import sqlite3
import datetime
from typing import Optional, List, Dict, Tuple
from enum import Enum

from .errors import InvalidParticipantPair


class ParticipantRole(str, Enum):
    """Roles that can take part in a conversation."""
    PATIENT = "patient"
    LAB = "lab"
    PHLEBOTOMIST = "phlebotomist"


class MessageStatus(str, Enum):
    """Per-message delivery status. Only ever advances."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}

ALLOWED_PAIRS = {
    frozenset({ParticipantRole.PATIENT, ParticipantRole.LAB}),
    frozenset({ParticipantRole.PHLEBOTOMIST, ParticipantRole.LAB}),
}


def parse_role(value) -> ParticipantRole:
    """Coerce a role tag to ParticipantRole or raise InvalidParticipantPair."""
    if isinstance(value, ParticipantRole):
        return value
    try:
        return ParticipantRole(str(value).strip().lower())
    except ValueError:
        raise InvalidParticipantPair(f"Unknown participant role: {value}")


def participant_column(role: ParticipantRole) -> str:
    role = ParticipantRole(role)
    if role is ParticipantRole.PATIENT:
        return "patient_id"
    elif role is ParticipantRole.LAB:
        return "lab_id"
    elif role is ParticipantRole.PHLEBOTOMIST:
        return "phlebotomist_id"
    raise ValueError(f"Unhandled participant role: {role!r}")


def unread_column(role: ParticipantRole) -> str:
    role = ParticipantRole(role)
    if role is ParticipantRole.PATIENT:
        return "unread_patient"
    elif role is ParticipantRole.LAB:
        return "unread_lab"
    elif role is ParticipantRole.PHLEBOTOMIST:
        return "unread_phlebotomist"
    raise ValueError(f"Unhandled participant role: {role!r}")


def validate_pair(role_a: ParticipantRole, role_b: ParticipantRole):
    if frozenset({role_a, role_b}) not in ALLOWED_PAIRS:
        raise InvalidParticipantPair(
            f"Conversations between {role_a.value} and {role_b.value} are not allowed"
        )


def make_pair_key(id_a: str, role_a: ParticipantRole, id_b: str, role_b: ParticipantRole) -> str:
    """Canonical key for an unordered participant pair."""
    parts = sorted([f"{role_a.value}:{id_a}", f"{role_b.value}:{id_b}"])
    return "|".join(parts)


# ============================================================================
# SCHEMA INITIALIZATION
# ============================================================================

def init_chat_schema(conn: sqlite3.Connection):
    """Initialize all chat tables."""
    c = conn.cursor()

    # ----- Conversations: one per participant pair -----
    c.execute("""
        CREATE TABLE IF NOT EXISTS chat_conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pair_key TEXT NOT NULL UNIQUE,
            patient_id TEXT,
            lab_id TEXT,
            phlebotomist_id TEXT,
            booking_id TEXT,
            last_message TEXT,
            last_message_at TEXT,
            unread_patient INTEGER NOT NULL DEFAULT 0,
            unread_lab INTEGER NOT NULL DEFAULT 0,
            unread_phlebotomist INTEGER NOT NULL DEFAULT 0,
            locked INTEGER NOT NULL DEFAULT 0,
            locked_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # ----- Messages: append-only, status is the only mutable column -----
    c.execute("""
        CREATE TABLE IF NOT EXISTS chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id INTEGER NOT NULL,
            sender TEXT NOT NULL,
            sender_id TEXT NOT NULL,
            content TEXT,
            status TEXT NOT NULL DEFAULT 'sent',
            status_updated_at TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES chat_conversations(id)
        )
    """)

    # ----- Attachments addressed by (message_id, position) -----
    c.execute("""
        CREATE TABLE IF NOT EXISTS chat_attachments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id INTEGER NOT NULL,
            position INTEGER NOT NULL,
            filename TEXT NOT NULL,
            content_type TEXT NOT NULL,
            size INTEGER NOT NULL,
            data BLOB NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (message_id) REFERENCES chat_messages(id),
            UNIQUE(message_id, position)
        )
    """)

    # ----- In-app notifications for message recipients -----
    c.execute("""
        CREATE TABLE IF NOT EXISTS chat_notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipient_id TEXT NOT NULL,
            recipient_role TEXT NOT NULL,
            conversation_id INTEGER NOT NULL,
            message_id INTEGER NOT NULL,
            sender_role TEXT NOT NULL,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
    """)

    # ----- Indexes -----
    c.execute("CREATE INDEX IF NOT EXISTS idx_chat_conv_patient ON chat_conversations(patient_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_chat_conv_lab ON chat_conversations(lab_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_chat_conv_phleb ON chat_conversations(phlebotomist_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_chat_conv_booking ON chat_conversations(booking_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_chat_msg_conv ON chat_messages(conversation_id, created_at, id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_chat_attach_msg ON chat_attachments(message_id)")
    c.execute("CREATE INDEX IF NOT EXISTS idx_chat_notif_recipient ON chat_notifications(recipient_role, recipient_id)")

    conn.commit()


# ============================================================================
# DATA ACCESS HELPERS
# ============================================================================

def _ts() -> str:
    """Current UTC timestamp in ISO format (fixed width, sortable)."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="microseconds")


def conversation_to_dict(row) -> Dict:
    d = dict(row)
    participants = [
        role.value for role in ParticipantRole
        if d.get(participant_column(role))
    ]
    return {
        "id": d["id"],
        "patient_id": d["patient_id"],
        "lab_id": d["lab_id"],
        "phlebotomist_id": d["phlebotomist_id"],
        "booking_id": d["booking_id"],
        "participants": participants,
        "last_message": d["last_message"],
        "last_message_at": d["last_message_at"],
        "unread_count": {
            role.value: d[unread_column(role)] if role.value in participants else 0
            for role in ParticipantRole
        },
        "locked": bool(d["locked"]),
        "locked_at": d["locked_at"],
        "created_at": d["created_at"],
        "updated_at": d["updated_at"],
    }


def get_conversation_row(conn: sqlite3.Connection, conversation_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM chat_conversations WHERE id = ?", (conversation_id,)
    ).fetchone()


def find_conversation_by_pair(conn: sqlite3.Connection, pair_key: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM chat_conversations WHERE pair_key = ?", (pair_key,)
    ).fetchone()


def insert_conversation(
    conn: sqlite3.Connection,
    pair_key: str,
    participants: Dict[ParticipantRole, str],
    booking_id: str = None
) -> int:
    """Insert a conversation. Raises sqlite3.IntegrityError if the pair exists."""
    c = conn.cursor()
    now = _ts()
    c.execute("""
        INSERT INTO chat_conversations
            (pair_key, patient_id, lab_id, phlebotomist_id, booking_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        pair_key,
        participants.get(ParticipantRole.PATIENT),
        participants.get(ParticipantRole.LAB),
        participants.get(ParticipantRole.PHLEBOTOMIST),
        booking_id, now, now
    ))
    conn.commit()
    return c.lastrowid


def attach_booking(conn: sqlite3.Connection, conversation_id: int, booking_id: str) -> bool:
    """Link a booking to a conversation that has none yet."""
    c = conn.cursor()
    c.execute("""
        UPDATE chat_conversations SET booking_id = ?, updated_at = ?
        WHERE id = ? AND booking_id IS NULL
    """, (booking_id, _ts(), conversation_id))
    conn.commit()
    return c.rowcount > 0


def get_participant_conversations(
    conn: sqlite3.Connection,
    participant_id: str,
    role: ParticipantRole
) -> List[Dict]:
    """All conversations for a participant, most recent activity first."""
    column = participant_column(role)
    rows = conn.execute(f"""
        SELECT * FROM chat_conversations WHERE {column} = ?
        ORDER BY COALESCE(last_message_at, created_at) DESC, id DESC
    """, (participant_id,)).fetchall()
    return [conversation_to_dict(r) for r in rows]


def get_booking_conversation_ids(conn: sqlite3.Connection, booking_id: str, lab_id: str = None) -> List[int]:
    sql = "SELECT id FROM chat_conversations WHERE booking_id = ?"
    params = [booking_id]
    if lab_id is not None:
        sql += " AND lab_id = ?"
        params.append(lab_id)
    rows = conn.execute(sql + " ORDER BY id", params).fetchall()
    return [r["id"] for r in rows]


def is_participant(conversation: Dict, participant_id: str, role: ParticipantRole) -> bool:
    column = participant_column(role)
    return conversation.get(column) is not None and str(conversation[column]) == str(participant_id)


def other_participant(conversation: Dict, role: ParticipantRole) -> Optional[Tuple[ParticipantRole, str]]:
    """The (role, id) of the participant that is not `role`."""
    for other in ParticipantRole:
        if other is ParticipantRole(role):
            continue
        value = conversation.get(participant_column(other))
        if value:
            return other, value
    return None


# ---- Messages ----

def insert_chat_message(
    c: sqlite3.Cursor,
    conversation_id: int,
    sender: ParticipantRole,
    sender_id: str,
    content: Optional[str],
    created_at: str
) -> int:
    """Insert a message row. Caller owns the transaction."""
    c.execute("""
        INSERT INTO chat_messages (conversation_id, sender, sender_id, content, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (conversation_id, sender.value, sender_id, content, MessageStatus.SENT.value, created_at))
    return c.lastrowid


def insert_attachments(c: sqlite3.Cursor, message_id: int, attachments: List[Dict], created_at: str) -> List[Dict]:
    """Store attachment blobs at positions 0..n-1. Caller owns the transaction."""
    stored = []
    for position, att in enumerate(attachments):
        data = att["data"]
        c.execute("""
            INSERT INTO chat_attachments (message_id, position, filename, content_type, size, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (message_id, position, att["filename"], att["content_type"], len(data),
              sqlite3.Binary(data), created_at))
        stored.append({
            "index": position,
            "filename": att["filename"],
            "content_type": att["content_type"],
            "size": len(data),
        })
    return stored


def get_message(conn: sqlite3.Connection, message_id: int) -> Optional[Dict]:
    row = conn.execute("SELECT * FROM chat_messages WHERE id = ?", (message_id,)).fetchone()
    if not row:
        return None
    d = dict(row)
    d["attachments"] = get_attachments_bulk(conn, [message_id]).get(message_id, [])
    return d


def get_chat_messages(conn: sqlite3.Connection, conversation_id: int) -> List[Dict]:
    """All messages of a conversation, oldest first, ties broken by insertion order."""
    rows = conn.execute("""
        SELECT * FROM chat_messages WHERE conversation_id = ?
        ORDER BY created_at ASC, id ASC
    """, (conversation_id,)).fetchall()
    messages = [dict(r) for r in rows]
    attachments = get_attachments_bulk(conn, [m["id"] for m in messages])
    for m in messages:
        m["attachments"] = attachments.get(m["id"], [])
    return messages


def get_attachments_bulk(conn: sqlite3.Connection, message_ids: List[int]) -> Dict[int, List[Dict]]:
    """Attachment metadata (no blobs) for multiple messages at once."""
    if not message_ids:
        return {}
    placeholders = ",".join("?" * len(message_ids))
    rows = conn.execute(f"""
        SELECT message_id, position, filename, content_type, size
        FROM chat_attachments WHERE message_id IN ({placeholders})
        ORDER BY message_id, position
    """, message_ids).fetchall()

    result: Dict[int, List[Dict]] = {mid: [] for mid in message_ids}
    for r in rows:
        result[r["message_id"]].append({
            "index": r["position"], "filename": r["filename"],
            "content_type": r["content_type"], "size": r["size"]
        })
    return result


def get_attachment_blob(conn: sqlite3.Connection, message_id: int, position: int) -> Optional[Dict]:
    row = conn.execute("""
        SELECT filename, content_type, size, data FROM chat_attachments
        WHERE message_id = ? AND position = ?
    """, (message_id, position)).fetchone()
    if not row:
        return None
    d = dict(row)
    d["data"] = bytes(d["data"])
    return d


# ---- Status & unread accounting ----

def mark_messages_read(c: sqlite3.Cursor, conversation_id: int, reader_role: ParticipantRole, now: str) -> int:
    """Set status=read on every message not sent by reader_role."""
    c.execute("""
        UPDATE chat_messages SET status = ?, status_updated_at = ?
        WHERE conversation_id = ? AND sender != ? AND status != ?
    """, (MessageStatus.READ.value, now, conversation_id, reader_role.value, MessageStatus.READ.value))
    return c.rowcount


def advance_message_status(conn: sqlite3.Connection, message_id: int, status: MessageStatus) -> bool:
    """Move a message forward to `status`. Never regresses."""
    lower = [s.value for s, rank in STATUS_RANK.items() if rank < STATUS_RANK[status]]
    if not lower:
        return False
    placeholders = ",".join("?" * len(lower))
    c = conn.cursor()
    c.execute(f"""
        UPDATE chat_messages SET status = ?, status_updated_at = ?
        WHERE id = ? AND status IN ({placeholders})
    """, [status.value, _ts(), message_id] + lower)
    conn.commit()
    return c.rowcount > 0


def recount_unread(c: sqlite3.Cursor, conversation_id: int, now: str) -> Dict[str, int]:
    """Recompute the participants' unread counters from the message table. Absent roles stay 0."""
    conversation = dict(c.execute(
        "SELECT * FROM chat_conversations WHERE id = ?", (conversation_id,)
    ).fetchone())
    counts = {}
    for role in ParticipantRole:
        if not conversation.get(participant_column(role)):
            counts[role.value] = 0
            continue
        row = c.execute("""
            SELECT COUNT(*) AS cnt FROM chat_messages
            WHERE conversation_id = ? AND sender != ? AND status != ?
        """, (conversation_id, role.value, MessageStatus.READ.value)).fetchone()
        counts[role.value] = row["cnt"]
    c.execute("""
        UPDATE chat_conversations
        SET unread_patient = ?, unread_lab = ?, unread_phlebotomist = ?, updated_at = ?
        WHERE id = ?
    """, (counts[ParticipantRole.PATIENT.value], counts[ParticipantRole.LAB.value],
          counts[ParticipantRole.PHLEBOTOMIST.value], now, conversation_id))
    return counts


# ---- Notifications ----

def insert_notification(
    conn: sqlite3.Connection,
    recipient_id: str,
    recipient_role: ParticipantRole,
    conversation_id: int,
    message_id: int,
    sender_role: ParticipantRole
) -> int:
    c = conn.cursor()
    c.execute("""
        INSERT INTO chat_notifications
            (recipient_id, recipient_role, conversation_id, message_id, sender_role, title, body, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (recipient_id, recipient_role.value, conversation_id, message_id, sender_role.value,
          "New Message", f"You have a new message from {sender_role.value}.", _ts()))
    conn.commit()
    return c.lastrowid


def get_notifications(
    conn: sqlite3.Connection,
    recipient_id: str,
    recipient_role: ParticipantRole,
    unread_only: bool = False
) -> List[Dict]:
    sql = "SELECT * FROM chat_notifications WHERE recipient_id = ? AND recipient_role = ?"
    if unread_only:
        sql += " AND is_read = 0"
    sql += " ORDER BY id DESC"
    rows = conn.execute(sql, (recipient_id, recipient_role.value)).fetchall()
    result = []
    for r in rows:
        d = dict(r)
        d["is_read"] = bool(d["is_read"])
        result.append(d)
    return result


def mark_notification_read(
    conn: sqlite3.Connection,
    notification_id: int,
    recipient_id: str,
    recipient_role: ParticipantRole
) -> bool:
    c = conn.cursor()
    c.execute("""
        UPDATE chat_notifications SET is_read = 1
        WHERE id = ? AND recipient_id = ? AND recipient_role = ?
    """, (notification_id, recipient_id, recipient_role.value))
    conn.commit()
    return c.rowcount > 0

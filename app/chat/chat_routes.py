# ============================================================================
# Lab2Home Chat API Routes
# ============================================================================

import logging
from typing import List, Optional
from fastapi import FastAPI, Request, HTTPException, UploadFile, File, Form, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from app.config import CONFIG, ALLOWED_CONTENT_TYPES
from .errors import ChatError
from .models import ParticipantRole, parse_role

logger = logging.getLogger(__name__)


def _identity(session) -> Optional[tuple]:
    """(user_id, role) from a session mapping, or None."""
    user_id = session.get("user_id")
    user_type = session.get("user_type")
    if not user_id or not user_type:
        return None
    try:
        return str(user_id), ParticipantRole(user_type)
    except ValueError:
        return None


def register_chat_routes(app: FastAPI, get_conn):
    """Register all /api/chat/* routes and the /ws/chat socket."""

    from .chat_engine import get_chat_engine
    from .websocket import get_broadcaster

    get_chat_engine(get_conn)

    def engine():
        return get_chat_engine()

    def _user(request: Request):
        """Authenticated participant supplied by the auth layer via the session."""
        identity = _identity(request.session)
        if identity is None:
            raise HTTPException(401, "Unauthorized")
        return identity

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        logger.info(f"[CHAT] {request.method} {request.url.path} rejected: {exc.code}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ================================================================
    # CONVERSATIONS
    # ================================================================

    @app.post("/api/chat/conversation")
    async def create_conversation(request: Request):
        """Create or get the conversation with another participant."""
        user_id, role = _user(request)
        try:
            data = await request.json()
        except ValueError:
            raise HTTPException(400, "Invalid JSON body")

        target_id = data.get("targetUserId") or data.get("target_user_id")
        target_type = data.get("targetUserType") or data.get("target_user_type")
        if not target_id or not target_type:
            raise HTTPException(400, "targetUserId and targetUserType required")
        if str(target_id) == user_id and parse_role(target_type) is role:
            raise HTTPException(400, "Cannot start a conversation with yourself")

        conversation = engine().get_or_create_conversation(
            user_id, role, str(target_id), target_type,
            booking_id=data.get("bookingId") or data.get("booking_id"),
        )
        return {"ok": True, "conversation": conversation}

    @app.get("/api/chat/conversations")
    async def list_conversations(request: Request):
        """All conversations for the caller, most recent first."""
        user_id, role = _user(request)
        return {"ok": True, "conversations": engine().list_conversations(user_id, role)}

    @app.post("/api/chat/conversations/{conversation_id}/lock")
    async def lock_conversation(request: Request, conversation_id: int):
        """Lock a conversation after its report is uploaded (lab only)."""
        user_id, role = _user(request)
        if role is not ParticipantRole.LAB:
            raise HTTPException(403, "Lab access required")
        engine().require_participant(conversation_id, user_id, role)
        conversation = engine().lock_conversation(conversation_id)
        return {"ok": True, "conversation": conversation}

    @app.post("/api/chat/bookings/{booking_id}/lock")
    async def lock_booking(request: Request, booking_id: str):
        """Lock the caller's conversations linked to a booking."""
        user_id, role = _user(request)
        if role is not ParticipantRole.LAB:
            raise HTTPException(403, "Lab access required")
        conversations = engine().lock_booking(booking_id, lab_id=user_id)
        return {"ok": True, "count": len(conversations), "conversations": conversations}

    # ================================================================
    # MESSAGES
    # ================================================================

    @app.get("/api/chat/messages/{conversation_id}")
    async def get_messages(request: Request, conversation_id: int):
        """Ordered messages for a conversation (participants only)."""
        user_id, role = _user(request)
        engine().require_participant(conversation_id, user_id, role)
        return {"ok": True, "messages": engine().get_messages(conversation_id)}

    @app.post("/api/chat/messages", status_code=201)
    async def send_message(
        request: Request,
        conversationId: int = Form(...),
        content: Optional[str] = Form(None),
        files: Optional[List[UploadFile]] = File(None),
    ):
        """Send a message with optional file attachments (multipart)."""
        user_id, role = _user(request)

        files = [f for f in (files or []) if f is not None and f.filename]
        if len(files) > CONFIG["max_files"]:
            raise HTTPException(400, f"Upload Error: at most {CONFIG['max_files']} files per message")

        max_bytes = CONFIG["max_upload_mb"] * 1024 * 1024
        attachments = []
        for upload in files:
            content_type = (upload.content_type or "").lower()
            if content_type not in ALLOWED_CONTENT_TYPES:
                raise HTTPException(400, "Upload Error: Invalid file type. Only JPEG, PNG, WEBP and PDF are allowed.")
            data = await upload.read()
            if len(data) > max_bytes:
                raise HTTPException(400, f"Upload Error: File exceeds {CONFIG['max_upload_mb']}MB limit")
            attachments.append({
                "filename": upload.filename,
                "content_type": content_type,
                "data": data,
            })

        msg = engine().send_message(
            conversation_id=conversationId,
            sender_role=role,
            sender_id=user_id,
            content=content,
            attachments=attachments,
        )
        return {"ok": True, "message": msg}

    @app.put("/api/chat/messages/{conversation_id}/read")
    async def mark_read(request: Request, conversation_id: int):
        """Mark everything the other side sent as read."""
        user_id, role = _user(request)
        engine().require_participant(conversation_id, user_id, role)
        conversation = engine().mark_conversation_read(conversation_id, role)
        return {"ok": True, "conversation": conversation}

    @app.get("/api/chat/messages/{message_id}/attachments/{index}")
    async def get_attachment(request: Request, message_id: int, index: int):
        """Stream an attachment's bytes to a conversation participant."""
        user_id, role = _user(request)
        blob = engine().resolve_attachment(message_id, index, user_id, role)
        filename = blob["filename"].replace('"', "")
        return Response(
            content=blob["data"],
            media_type=blob["content_type"],
            headers={"Content-Disposition": f'inline; filename="{filename}"'},
        )

    # ================================================================
    # NOTIFICATIONS
    # ================================================================

    @app.get("/api/chat/notifications")
    async def list_notifications(request: Request, unread: bool = False):
        user_id, role = _user(request)
        return {"ok": True, "notifications": engine().get_notifications(user_id, role, unread_only=unread)}

    @app.put("/api/chat/notifications/{notification_id}/read")
    async def read_notification(request: Request, notification_id: int):
        user_id, role = _user(request)
        if not engine().mark_notification_read(notification_id, user_id, role):
            raise HTTPException(404, "Notification not found")
        return {"ok": True}

    # ================================================================
    # CHAT WEBSOCKET ENDPOINT
    # ================================================================

    @app.websocket("/ws/chat")
    async def chat_websocket(websocket: WebSocket):
        """Real-time room events: new_message, messages_read, conversation_locked."""
        identity = _identity(websocket.session) or _identity(websocket.query_params)
        if identity is None:
            await websocket.close(code=4401)
            return

        broadcaster = get_broadcaster()
        await broadcaster.connect(websocket, identity[0], identity[1])
        try:
            while True:
                data = await websocket.receive_json()
                await broadcaster.handle_client_message(websocket, data)
        except WebSocketDisconnect:
            await broadcaster.disconnect(websocket)
        except Exception as e:
            logger.warning(f"[WS/Chat] Error for {identity[0]}: {e}")
            await broadcaster.disconnect(websocket)

    logger.info("[CHAT] Chat routes registered")

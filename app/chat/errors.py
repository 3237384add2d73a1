# ============================================================================
# Lab2Home Chat — Error Taxonomy
# ============================================================================
# Raised by the chat engine, mapped to JSON responses by chat_routes.
# None of these are retryable: the caller must change the request.
# ============================================================================


class ChatError(Exception):
    """Base class for client-facing chat errors."""

    code = "chat_error"
    status_code = 400

    def __init__(self, detail: str = None):
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)

    def to_dict(self):
        return {"ok": False, "error": self.code, "detail": self.detail}


class InvalidParticipantPair(ChatError):
    """Conversations are only allowed between patient/lab or phlebotomist/lab."""

    code = "invalid_participant_pair"
    status_code = 400


class EmptyMessage(ChatError):
    """A message needs text content or at least one attachment."""

    code = "empty_message"
    status_code = 400


class ConversationLocked(ChatError):
    """This conversation is locked. The report has been uploaded and the booking is complete."""

    code = "conversation_locked"
    status_code = 423


class NotFound(ChatError):
    """Resource not found."""

    code = "not_found"
    status_code = 404


class Forbidden(ChatError):
    """Not a participant of this conversation."""

    code = "forbidden"
    status_code = 403

from typing import Any, Dict, Optional


class ChatError(Exception):

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class BadRequest(ChatError):

    status_code = 400


class NotFound(ChatError):

    status_code = 404


class AccessDenied(ChatError):

    status_code = 403


class ConversationExists(ChatError):

    status_code = 409

    def __init__(self, conversation_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or "Conversation already exists")
        self.conversation_id = conversation_id

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "conversation_id": self.conversation_id}

import logging
from typing import Any, Dict, List, Optional

import httpx

from srcchat.client.base import ChatApiError
from srcchat.config import get_settings
from srcchat.schemas.chat import ChatConversation, ChatMessage, ChatParticipant, MessagesPage

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"{fallback}: {response.status_code} - {response.text}"
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("detail")
        if isinstance(detail, str):
            return detail
    return fallback


class ChatApiClient:
    """HTTP client of the /api/chat endpoints, usable as the reconcilers' backend."""

    def __init__(self, user_id: str, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url or get_settings().api_base_url, transport=transport, timeout=timeout)
        self._headers = {"X-User-Id": user_id}
        self._base = "/api/chat"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, fallback: str, **kwargs) -> httpx.Response:
        response = await self._client.request(method, f"{self._base}{path}", headers=self._headers, **kwargs)
        if response.is_error:
            message = _error_message(response, fallback)
            logger.debug("%s %s failed: %s", method, path, message)
            payload = None
            try:
                payload = response.json()
            except ValueError:
                pass
            raise ChatApiError(message, response.status_code, payload if isinstance(payload, dict) else None)
        return response

    async def get_conversations(self) -> List[ChatConversation]:
        response = await self._request("GET", "/conversations", "Failed to fetch conversations")
        return [ChatConversation.model_validate(c) for c in response.json()["conversations"]]

    async def create_conversation(self, src_member_id: str) -> ChatConversation:
        return await self._create({"src_member_id": src_member_id})

    async def create_conversation_with_student(self, student_id: str) -> ChatConversation:
        return await self._create({"student_id": student_id})

    async def _create(self, body: Dict[str, Any]) -> ChatConversation:
        try:
            response = await self._request("POST", "/conversations", "Failed to create conversation", json=body)
        except ChatApiError as exc:
            existing_id = exc.payload.get("conversation_id")
            if exc.status_code != 409:
                raise
            if existing_id:
                for conversation in await self.get_conversations():
                    if conversation.id == existing_id:
                        return conversation
            raise ChatApiError("Conversation already exists but could not be retrieved", 409, exc.payload) from exc
        return ChatConversation.model_validate(response.json()["conversation"])

    async def get_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> MessagesPage:
        params = {"conversation_id": conversation_id, "limit": limit, "offset": offset}
        response = await self._request("GET", "/messages", "Failed to fetch messages", params=params)
        return MessagesPage.model_validate(response.json())

    async def get_conversation_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> MessagesPage:
        params = {"limit": limit, "offset": offset}
        response = await self._request("GET", f"/conversations/{conversation_id}/messages", "Failed to fetch conversation messages", params=params)
        return MessagesPage.model_validate(response.json())

    async def send_message(self, conversation_id: str, content: str, message_type: str = "text") -> ChatMessage:
        body = {"conversation_id": conversation_id, "content": content, "message_type": message_type}
        response = await self._request("POST", "/messages", "Failed to send message", json=body)
        return ChatMessage.model_validate(response.json()["message"])

    async def mark_message_read(self, message_id: str) -> None:
        await self._request("PUT", f"/messages/{message_id}/read", "Failed to mark message as read")

    async def clear_messages(self, conversation_id: str) -> None:
        await self._request("DELETE", "/messages/clear", "Failed to clear messages", json={"conversation_id": conversation_id})

    async def get_participants(self, department: Optional[str] = None) -> List[ChatParticipant]:
        params = {"department": department} if department else None
        response = await self._request("GET", "/participants", "Failed to fetch participants", params=params)
        return [ChatParticipant.model_validate(p) for p in response.json()["participants"]]

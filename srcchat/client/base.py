from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

from srcchat.schemas.chat import ChangeEvent, ChatConversation, ChatMessage, MessagesPage
from srcchat.utils.realtime_bus import ChannelStatus

EventHandler = Callable[[ChangeEvent], Union[Awaitable[None], None]]
StatusHandler = Callable[[ChannelStatus], None]


class ChatBackend(Protocol):
    """Request/response side of the chat API.

    Any call may raise; a failed call leaves the caller's state unchanged.
    ``get_messages`` pages oldest first and ``MessagesPage.total`` is the
    full size of the conversation, not the length of the page.
    """

    async def get_conversations(self) -> List[ChatConversation]: ...

    async def get_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> MessagesPage: ...

    async def send_message(self, conversation_id: str, content: str, message_type: str = "text") -> ChatMessage: ...

    async def mark_message_read(self, message_id: str) -> None: ...

    async def clear_messages(self, conversation_id: str) -> None: ...


class RealtimeFeed(Protocol):
    """Topic subscriptions delivering change events.

    ``subscribe`` returns an opaque handle and reports channel health through
    ``on_status``; events for a handle stop after ``unsubscribe``.
    """

    async def subscribe(self, topic: str, on_event: EventHandler, on_status: StatusHandler) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...


class ChatApiError(Exception):

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[dict] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}

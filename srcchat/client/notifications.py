import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from srcchat.client.base import ChatBackend, RealtimeFeed
from srcchat.client.connection import ConnectionState, SubscriptionSupervisor
from srcchat.config import get_settings
from srcchat.schemas.chat import MESSAGES_TABLE, ChangeEvent, ChatConversation, ChatMessage
from srcchat.utils.realtime_bus import user_topic

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 20
PREVIEW_LENGTH = 50
SEED_WINDOW = 5


class ChatNotification(BaseModel):

    id: str
    title: str = "New Message"
    message: str
    conversation_id: str
    sender_id: str
    sender_name: str = "Unknown"
    timestamp: datetime
    is_read: bool = False


def preview(content: str, length: int = PREVIEW_LENGTH) -> str:
    if len(content) <= length:
        return content
    return content[:length] + "..."


class NotificationCenter:
    """Per-user notification feed built from inbound chat messages."""

    def __init__(
        self,
        backend: ChatBackend,
        feed: RealtimeFeed,
        current_user_id: str,
        *,
        poll_interval: Optional[float] = None,
        retry_delay: Optional[float] = None,
        reconnect_interval: Optional[float] = None,
        subscribe_delay: Optional[float] = None,
        on_notification: Optional[Callable[[ChatNotification], None]] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
    ) -> None:
        settings = get_settings()
        self._backend = backend
        self._feed = feed
        self.current_user_id = current_user_id
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        self.retry_delay = retry_delay if retry_delay is not None else settings.retry_delay
        self.reconnect_interval = reconnect_interval if reconnect_interval is not None else settings.reconnect_interval
        self.subscribe_delay = subscribe_delay if subscribe_delay is not None else settings.subscribe_delay
        self._on_notification = on_notification
        self._on_state_change = on_state_change

        self.notifications: List[ChatNotification] = []
        self.total_unread_messages = 0
        self._conversations: Dict[str, ChatConversation] = {}
        self._counted: Set[str] = set()
        self._read: Set[str] = set()
        self._generation = 0
        self._supervisor: Optional[SubscriptionSupervisor] = None

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.is_read)

    @property
    def is_connected(self) -> bool:
        return self._supervisor is not None and self._supervisor.state == ConnectionState.CONNECTED

    async def start(self) -> None:
        if self._supervisor is not None:
            return
        try:
            await self.refresh()
        except Exception:
            logger.warning("Failed to load conversations for notifications", exc_info=True)
        generation = self._generation
        self._supervisor = SubscriptionSupervisor(
            self._feed,
            user_topic(self.current_user_id),
            lambda event: self._handle_event(generation, event),
            self.refresh,
            poll_interval=self.poll_interval,
            retry_delay=self.retry_delay,
            reconnect_interval=self.reconnect_interval,
            subscribe_delay=self.subscribe_delay,
            on_state_change=self._on_state_change,
        )
        self._supervisor.start()

    async def stop(self) -> None:
        self._generation += 1
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            await supervisor.stop()

    async def __aenter__(self) -> "NotificationCenter":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def refresh(self) -> None:
        """Re-fetch conversations and reseed the unread message total."""
        generation = self._generation
        conversations = await self._backend.get_conversations()
        if generation != self._generation:
            return
        self._conversations = {c.id: c for c in conversations}
        unread = set()
        for conversation in conversations:
            for message in (conversation.messages or [])[-SEED_WINDOW:]:
                if message.sender_id != self.current_user_id and not message.is_read:
                    unread.add(message.id)
        self._counted = unread
        self._read = set()
        self.total_unread_messages = len(unread)

    def mark_as_read(self, notification_id: str) -> bool:
        for i, notification in enumerate(self.notifications):
            if notification.id == notification_id:
                if notification.is_read:
                    return False
                self.notifications[i] = notification.model_copy(update={"is_read": True})
                return True
        return False

    def clear_all(self) -> None:
        self.notifications = []

    async def apply_insert(self, message: Optional[ChatMessage]) -> Optional[ChatNotification]:
        if message is None or message.sender_id == self.current_user_id:
            return None
        if message.id in self._counted:
            return None
        self._counted.add(message.id)
        if not message.is_read:
            self.total_unread_messages += 1

        if message.conversation_id not in self._conversations:
            try:
                await self.refresh()
            except Exception:
                logger.warning("Failed to refresh conversations for %s", message.conversation_id, exc_info=True)
            # refresh reseeds the counted set
            self._counted.add(message.id)
        notification = ChatNotification(
            id=f"msg_{message.id}",
            message=preview(message.content),
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            sender_name=self._sender_name(message),
            timestamp=message.created_at,
        )
        self.notifications = [notification] + [n for n in self.notifications if n.id != notification.id]
        del self.notifications[MAX_NOTIFICATIONS:]
        if self._on_notification is not None:
            self._on_notification(notification)
        return notification

    def apply_update(self, message: Optional[ChatMessage], was_read: Optional[bool] = None) -> bool:
        if message is None or not message.is_read or was_read:
            return False
        if message.sender_id == self.current_user_id or message.id in self._read:
            return False
        self._read.add(message.id)
        self.total_unread_messages = max(0, self.total_unread_messages - 1)
        self.mark_as_read(f"msg_{message.id}")
        return True

    async def _handle_event(self, generation: int, event: ChangeEvent) -> None:
        if generation != self._generation or event.table != MESSAGES_TABLE:
            return
        if event.type == "INSERT":
            await self.apply_insert(event.message())
        elif event.type == "UPDATE":
            was_read = (event.old_record or {}).get("is_read")
            self.apply_update(event.message(), was_read)

    def _sender_name(self, message: ChatMessage) -> str:
        conversation = self._conversations.get(message.conversation_id)
        if conversation is None:
            return "Unknown"
        if conversation.student_id == message.sender_id:
            person = conversation.student
        else:
            person = conversation.src_member
        if person is None or not person.full_name:
            return "Unknown"
        return person.full_name

import asyncio
import logging
from typing import Callable, List, Optional, Set

from srcchat.client.base import ChatBackend, RealtimeFeed
from srcchat.client.connection import ConnectionState, SubscriptionSupervisor
from srcchat.client.merge import insert_message, mark_read, merge_lists, replace_message, unread_count
from srcchat.config import get_settings
from srcchat.schemas.chat import CONVERSATIONS_TABLE, MESSAGES_TABLE, ChangeEvent, ChatConversation, ChatMessage
from srcchat.utils.realtime_bus import user_topic

logger = logging.getLogger(__name__)


def _by_recency(conversations: List[ChatConversation]) -> List[ChatConversation]:
    return sorted(conversations, key=lambda c: c.last_activity(), reverse=True)


def _with_sorted_messages(conversation: ChatConversation, local: Optional[ChatConversation] = None) -> ChatConversation:
    if conversation.messages is None:
        return conversation
    known = (local.messages or []) if local else []
    return conversation.model_copy(update={"messages": merge_lists(known, conversation.messages)})


class ConversationListReconciler:
    """Recency-ordered conversations of the signed-in user with unread counts.

    Realtime events on the user's topic are the primary source; while the
    channel is down the list is re-fetched every ``poll_interval`` seconds.
    """

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
        on_change: Optional[Callable[[], None]] = None,
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
        self._on_change = on_change
        self._on_state_change = on_state_change

        self.selected_id: Optional[str] = None
        self.loading = False
        self.error: Optional[str] = None
        self._conversations: List[ChatConversation] = []
        self._processed: Set[str] = set()
        self._generation = 0
        self._supervisor: Optional[SubscriptionSupervisor] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def conversations(self) -> List[ChatConversation]:
        return list(self._conversations)

    @property
    def supervisor(self) -> Optional[SubscriptionSupervisor]:
        return self._supervisor

    @property
    def state(self) -> ConnectionState:
        return self._supervisor.state if self._supervisor else ConnectionState.DISCONNECTED

    def get(self, conversation_id: str) -> Optional[ChatConversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def start(self) -> bool:
        ok = await self.load()
        if ok:
            self._start_supervisor()
        return ok

    async def retry(self) -> bool:
        """Manual retry after a failed load."""
        ok = await self.load()
        if ok and self._supervisor is None:
            self._start_supervisor()
        return ok

    async def stop(self) -> None:
        self._generation += 1
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            await supervisor.stop()
        self._processed.clear()

    async def __aenter__(self) -> "ConversationListReconciler":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def load(self) -> bool:
        generation = self._generation
        self.loading = True
        try:
            fetched = await self._backend.get_conversations()
        except Exception:
            logger.warning("Failed to load conversations", exc_info=True)
            if generation == self._generation:
                self.loading = False
                self.error = "Failed to load conversations"
                self._notify()
            return False
        if generation != self._generation:
            return False
        self._conversations = _by_recency([_with_sorted_messages(c, self.get(c.id)) for c in fetched])
        self._processed = {m.id for c in self._conversations for m in (c.messages or [])}
        self.loading = False
        self.error = None
        self._notify()
        return True

    async def poll_once(self) -> None:
        generation = self._generation
        fetched = await self._backend.get_conversations()
        if generation != self._generation:
            return
        merged = [_with_sorted_messages(c, self.get(c.id)) for c in fetched]
        self._conversations = _by_recency(merged)
        self._processed.update(m.id for c in self._conversations for m in (c.messages or []))
        self._notify()

    async def apply_message(self, message: Optional[ChatMessage]) -> bool:
        """Merge one inbound message; returns False when it had no effect."""
        if message is None or message.sender_id == self.current_user_id:
            return False
        if message.id in self._processed:
            return False
        self._processed.add(message.id)

        index = self._index_of(message.conversation_id)
        if index is None:
            # conversation not loaded yet
            await self.load()
            return True

        conversation = self._conversations.pop(index)
        messages = list(conversation.messages or [])
        insert_message(messages, message)
        last_at = conversation.last_message_at
        if last_at is None or message.created_at > last_at:
            last_at = message.created_at
        self._conversations.insert(0, conversation.model_copy(update={"messages": messages, "last_message_at": last_at}))
        self._notify()
        return True

    def apply_update(self, message: Optional[ChatMessage]) -> bool:
        if message is None:
            return False
        index = self._index_of(message.conversation_id)
        if index is None:
            return False
        conversation = self._conversations[index]
        messages = list(conversation.messages or [])
        if not replace_message(messages, message):
            return False
        self._conversations[index] = conversation.model_copy(update={"messages": messages})
        self._notify()
        return True

    def unread_count(self, conversation_id: str) -> int:
        conversation = self.get(conversation_id)
        if conversation is None:
            return 0
        return unread_count(conversation.messages, self.current_user_id)

    def total_unread(self) -> int:
        return sum(unread_count(c.messages, self.current_user_id) for c in self._conversations)

    async def select(self, conversation_id: str) -> List[str]:
        """Open a conversation: clear its badge now, mark messages read in the background."""
        self.selected_id = conversation_id
        index = self._index_of(conversation_id)
        if index is None:
            return []
        conversation = self._conversations[index]
        messages = list(conversation.messages or [])
        unread_ids = [m.id for m in messages if m.sender_id != self.current_user_id and not m.is_read]
        if not unread_ids:
            return []
        mark_read(messages, unread_ids)
        self._conversations[index] = conversation.model_copy(update={"messages": messages})
        self._notify()
        for message_id in unread_ids:
            self._spawn(self._mark_read(message_id))
        return unread_ids

    async def _handle_event(self, generation: int, event: ChangeEvent) -> None:
        if generation != self._generation:
            return
        if event.table == MESSAGES_TABLE:
            if event.type == "INSERT":
                await self.apply_message(event.message())
            elif event.type == "UPDATE":
                self.apply_update(event.message())
            elif event.type == "DELETE":
                await self.load()
        elif event.table == CONVERSATIONS_TABLE and event.type == "INSERT":
            if self._index_of(event.record.get("id")) is None:
                await self.load()

    def _start_supervisor(self) -> None:
        generation = self._generation
        self._supervisor = SubscriptionSupervisor(
            self._feed,
            user_topic(self.current_user_id),
            lambda event: self._handle_event(generation, event),
            self.poll_once,
            poll_interval=self.poll_interval,
            retry_delay=self.retry_delay,
            reconnect_interval=self.reconnect_interval,
            subscribe_delay=self.subscribe_delay,
            on_state_change=self._on_state_change,
        )
        self._supervisor.start()

    def _index_of(self, conversation_id: Optional[str]) -> Optional[int]:
        for i, conversation in enumerate(self._conversations):
            if conversation.id == conversation_id:
                return i
        return None

    async def _mark_read(self, message_id: str) -> None:
        try:
            await self._backend.mark_message_read(message_id)
        except Exception:
            logger.warning("Failed to mark message %s as read", message_id, exc_info=True)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Conversation list change callback failed")

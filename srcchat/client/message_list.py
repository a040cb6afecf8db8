import asyncio
import logging
from typing import Callable, FrozenSet, List, Optional, Set

from srcchat.client.base import ChatBackend, RealtimeFeed
from srcchat.client.connection import ConnectionState, SubscriptionSupervisor
from srcchat.client.merge import insert_message, mark_read, merge_window, replace_message
from srcchat.config import get_settings
from srcchat.schemas.chat import MESSAGES_TABLE, ChangeEvent, ChatMessage, MessagesPage
from srcchat.utils.realtime_bus import conversation_topic

logger = logging.getLogger(__name__)


class MessageListReconciler:
    """Ordered, duplicate-free message log of the one open conversation.

    Sources merged by message id: the bulk fetch done on :meth:`switch`,
    realtime INSERT/UPDATE events for the conversation, optimistic echoes of
    the user's own sends (:meth:`add_local`) and a fallback poll. The poll
    keeps running while the channel is connected; when it finds messages the
    channel never delivered, ``mismatch_threshold`` times in a row, the
    subscription is treated as broken and recreated.

    Every await is followed by a generation check, so results that land after
    :meth:`switch` or :meth:`close` are dropped.
    """

    def __init__(
        self,
        backend: ChatBackend,
        feed: RealtimeFeed,
        current_user_id: str,
        *,
        page_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        retry_delay: Optional[float] = None,
        reconnect_interval: Optional[float] = None,
        subscribe_delay: Optional[float] = None,
        mismatch_threshold: Optional[int] = None,
        poll_while_connected: bool = True,
        on_message: Optional[Callable[[ChatMessage], None]] = None,
        on_change: Optional[Callable[[], None]] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
    ) -> None:
        settings = get_settings()
        self._backend = backend
        self._feed = feed
        self.current_user_id = current_user_id
        self.page_size = page_size or settings.message_page_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        self.retry_delay = retry_delay if retry_delay is not None else settings.retry_delay
        self.reconnect_interval = reconnect_interval if reconnect_interval is not None else settings.reconnect_interval
        self.subscribe_delay = subscribe_delay if subscribe_delay is not None else settings.subscribe_delay
        self.mismatch_threshold = max(1, mismatch_threshold or settings.mismatch_threshold)
        self.poll_while_connected = poll_while_connected
        self._on_message = on_message
        self._on_change = on_change
        self._on_state_change = on_state_change

        self.conversation_id: Optional[str] = None
        self.last_known_count = 0
        self.loading = False
        self.error: Optional[str] = None
        self._messages: List[ChatMessage] = []
        self._processed: Set[str] = set()
        self._growth_streak = 0
        self._generation = 0
        self._supervisor: Optional[SubscriptionSupervisor] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def processed_ids(self) -> FrozenSet[str]:
        return frozenset(self._processed)

    @property
    def supervisor(self) -> Optional[SubscriptionSupervisor]:
        return self._supervisor

    @property
    def state(self) -> ConnectionState:
        return self._supervisor.state if self._supervisor else ConnectionState.DISCONNECTED

    async def switch(self, conversation_id: Optional[str]) -> None:
        await self._teardown()
        self.conversation_id = conversation_id
        if conversation_id is None:
            self._notify()
            return
        generation = self._generation
        loaded = await self.load()
        if loaded and generation == self._generation:
            self._start_supervisor()

    async def retry(self) -> bool:
        """Manual retry after a failed load; subscribes once the load succeeds."""
        generation = self._generation
        if not await self.load() or generation != self._generation:
            return False
        if self._supervisor is None:
            self._start_supervisor()
        return True

    def _start_supervisor(self) -> None:
        generation = self._generation
        self._supervisor = SubscriptionSupervisor(
            self._feed,
            conversation_topic(self.conversation_id),
            lambda event: self._handle_event(generation, event),
            self.poll_once,
            poll_interval=self.poll_interval,
            retry_delay=self.retry_delay,
            reconnect_interval=self.reconnect_interval,
            subscribe_delay=self.subscribe_delay,
            poll_when_connected=self.poll_while_connected,
            on_state_change=self._on_state_change,
        )
        self._supervisor.start()

    async def close(self) -> None:
        await self.switch(None)

    async def __aenter__(self) -> "MessageListReconciler":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _fetch_latest(self, conversation_id: str) -> MessagesPage:
        """The newest ``page_size`` messages; the API pages oldest first."""
        page = await self._backend.get_messages(conversation_id, limit=self.page_size)
        if page.total <= len(page.messages):
            return page
        return await self._backend.get_messages(conversation_id, limit=self.page_size, offset=max(0, page.total - self.page_size))

    async def load(self) -> bool:
        """Bulk fetch of the newest page."""
        conversation_id, generation = self.conversation_id, self._generation
        if conversation_id is None:
            return False
        self.loading = True
        self._notify()
        try:
            page = await self._fetch_latest(conversation_id)
        except Exception:
            logger.warning("Failed to load messages of conversation %s", conversation_id, exc_info=True)
            if generation == self._generation:
                self.loading = False
                self.error = "Failed to load messages"
                self._notify()
            return False
        if generation != self._generation:
            return False
        self._messages = merge_window(self._messages, page.messages)
        self._processed.update(m.id for m in self._messages)
        self.last_known_count = page.total
        self.loading = False
        self.error = None
        self._notify()
        return True

    async def poll_once(self) -> bool:
        conversation_id, generation = self.conversation_id, self._generation
        if conversation_id is None:
            return False
        page = await self._fetch_latest(conversation_id)
        if generation != self._generation:
            return False
        count = page.total
        if count < self.last_known_count:
            # messages were removed elsewhere; adopt the lower baseline
            self.last_known_count = count
            return False
        if count == self.last_known_count:
            return False

        logger.info("Poll found %d messages in %s, %d known", count, conversation_id, self.last_known_count)
        self._messages = merge_window(self._messages, page.messages)
        self._processed.update(m.id for m in self._messages)
        self.last_known_count = count
        self._notify()
        await self._suspect_broken_channel()
        return True

    def apply_insert(self, message: Optional[ChatMessage]) -> bool:
        if message is None or message.conversation_id != self.conversation_id:
            return False
        if message.id in self._processed:
            return False
        self._processed.add(message.id)
        if not insert_message(self._messages, message):
            return False
        self.last_known_count += 1
        if message.sender_id != self.current_user_id and not message.is_read:
            mark_read(self._messages, [message.id])
            self._spawn(self._mark_read(message.id))
        self._notify()
        if self._on_message is not None:
            self._on_message(message)
        return True

    def apply_update(self, message: Optional[ChatMessage]) -> bool:
        if message is None or message.conversation_id != self.conversation_id:
            return False
        if not replace_message(self._messages, message):
            return False
        self._notify()
        return True

    def add_local(self, message: ChatMessage) -> bool:
        """Optimistic echo of a message this user just sent."""
        if message.conversation_id != self.conversation_id:
            return False
        self._processed.add(message.id)
        if not insert_message(self._messages, message):
            return False
        self.last_known_count += 1
        self._notify()
        return True

    async def send(self, content: str, message_type: str = "text") -> ChatMessage:
        if self.conversation_id is None:
            raise ValueError("No conversation selected")
        message = await self._backend.send_message(self.conversation_id, content, message_type)
        self.add_local(message)
        return message

    async def clear_all(self) -> None:
        """Delete every message remotely, then locally. Raises on failure."""
        conversation_id, generation = self.conversation_id, self._generation
        if conversation_id is None:
            return
        await self._backend.clear_messages(conversation_id)
        if generation != self._generation:
            return
        self._reset_log()
        self._notify()

    async def _handle_event(self, generation: int, event: ChangeEvent) -> None:
        if generation != self._generation or event.table != MESSAGES_TABLE:
            return
        # any delivery proves the channel is alive
        self._growth_streak = 0
        if event.type == "INSERT":
            self.apply_insert(event.message())
        elif event.type == "UPDATE":
            self.apply_update(event.message())
        elif event.type == "DELETE" and event.conversation_id == self.conversation_id:
            self._reset_log()
            self._notify()

    async def _suspect_broken_channel(self) -> None:
        supervisor = self._supervisor
        if supervisor is None or not supervisor.has_subscription:
            self._growth_streak = 0
            return
        self._growth_streak += 1
        if self._growth_streak < self.mismatch_threshold:
            return
        self._growth_streak = 0
        logger.warning("Realtime channel for %s missed messages, resubscribing", self.conversation_id)
        await supervisor.force_reconnect()

    async def _mark_read(self, message_id: str) -> None:
        try:
            await self._backend.mark_message_read(message_id)
        except Exception:
            logger.warning("Failed to mark message %s as read", message_id, exc_info=True)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _reset_log(self) -> None:
        self._messages = []
        self._processed.clear()
        self.last_known_count = 0
        self._growth_streak = 0

    async def _teardown(self) -> None:
        self._generation += 1
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            await supervisor.stop()
        self._reset_log()
        self.loading = False
        self.error = None

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Message list change callback failed")

import asyncio
import logging
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set

from srcchat.client.base import EventHandler, RealtimeFeed
from srcchat.utils.realtime_bus import ChannelStatus

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    TIMED_OUT = "timed_out"


def _alive(task: Optional[asyncio.Task]) -> bool:
    return task is not None and not task.done() and not task.cancelling()


def _pending(task: Optional[asyncio.Task]) -> bool:
    # the calling task is about to finish, so it never counts as pending
    return _alive(task) and task is not asyncio.current_task()


def _cancel_soon(task: Optional[asyncio.Task]) -> None:
    if _pending(task):
        task.cancel()


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


class SubscriptionSupervisor:
    """Owns one realtime subscription plus the timers that back it up.

    While the channel is not acknowledged, ``poll`` runs every
    ``poll_interval`` seconds and a reconnection timer resubscribes every
    ``reconnect_interval`` seconds whenever no handle is held. Channel
    failures release the handle and schedule a single retry after
    ``retry_delay``. Status reports from released handles are ignored.
    """

    def __init__(
        self,
        feed: RealtimeFeed,
        topic: str,
        on_event: EventHandler,
        poll: Callable[[], Awaitable[Any]],
        *,
        poll_interval: float = 3.0,
        retry_delay: float = 2.0,
        reconnect_interval: float = 5.0,
        subscribe_delay: float = 0.0,
        poll_when_connected: bool = False,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
    ) -> None:
        self._feed = feed
        self.topic = topic
        self._on_event = on_event
        self._poll = poll
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self.reconnect_interval = reconnect_interval
        self.subscribe_delay = subscribe_delay
        self.poll_when_connected = poll_when_connected
        self._on_state_change = on_state_change

        self.state = ConnectionState.DISCONNECTED
        self._handle: Any = None
        self._attempt = 0
        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._subscribe_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def has_subscription(self) -> bool:
        return self._handle is not None

    @property
    def polling(self) -> bool:
        return _pending(self._poll_task)

    @property
    def reconnecting(self) -> bool:
        return _pending(self._reconnect_task)

    @property
    def retry_pending(self) -> bool:
        return _pending(self._retry_task)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._ensure_polling()
        self._ensure_reconnect_timer()
        self._schedule_subscribe(self.subscribe_delay)

    async def stop(self) -> None:
        self._running = False
        for task in (self._subscribe_task, self._retry_task, self._reconnect_task, self._poll_task):
            await _cancel(task)
        self._subscribe_task = self._retry_task = self._reconnect_task = self._poll_task = None
        await self._release()
        self._set_state(ConnectionState.DISCONNECTED)

    async def force_reconnect(self, delay: Optional[float] = None) -> None:
        """Drop the current handle, which is presumed broken, and resubscribe."""
        if not self._running:
            return
        logger.info("Forcing resubscription to %s", self.topic)
        await self._release()
        self._set_state(ConnectionState.DISCONNECTED)
        self._ensure_polling()
        self._ensure_reconnect_timer()
        self._schedule_subscribe(self.subscribe_delay if delay is None else delay)

    async def __aenter__(self) -> "SubscriptionSupervisor":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _subscribe(self) -> None:
        if not self._running:
            return
        await self._release()
        self._attempt += 1
        attempt = self._attempt
        self._set_state(ConnectionState.CONNECTING)
        try:
            handle = await self._feed.subscribe(self.topic, self._on_event, lambda status: self._on_status(attempt, status))
        except Exception:
            logger.warning("Subscribe to %s failed", self.topic, exc_info=True)
            self._on_status(attempt, ChannelStatus.CHANNEL_ERROR)
            return
        if attempt != self._attempt or not self._running:
            # superseded while the subscribe call was in flight
            await self._unsubscribe(handle)
            return
        self._handle = handle

    def _on_status(self, attempt: int, status: ChannelStatus) -> None:
        if attempt != self._attempt or not self._running:
            return
        logger.info("Realtime %s: %s", self.topic, status.value)
        if status == ChannelStatus.SUBSCRIBED:
            self._set_state(ConnectionState.CONNECTED)
            _cancel_soon(self._retry_task)
            _cancel_soon(self._reconnect_task)
            if not self.poll_when_connected:
                _cancel_soon(self._poll_task)
            return
        if status == ChannelStatus.TIMED_OUT:
            self._set_state(ConnectionState.TIMED_OUT)
        else:
            self._set_state(ConnectionState.ERROR)
        self._attempt += 1
        handle, self._handle = self._handle, None
        if handle is not None:
            task = asyncio.get_running_loop().create_task(self._unsubscribe(handle))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        self._ensure_polling()
        self._ensure_reconnect_timer()
        self._schedule_retry()

    def _schedule_subscribe(self, delay: float) -> None:
        if _pending(self._subscribe_task):
            return
        self._subscribe_task = asyncio.get_running_loop().create_task(self._subscribe_after(delay))

    async def _subscribe_after(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self._subscribe()

    def _schedule_retry(self) -> None:
        if self.retry_pending:
            return
        self._retry_task = asyncio.get_running_loop().create_task(self._subscribe_after(self.retry_delay))

    def _ensure_polling(self) -> None:
        if self._running and not _alive(self._poll_task):
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def _ensure_reconnect_timer(self) -> None:
        if self._running and not _alive(self._reconnect_task):
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.poll_interval)
            if not self._running:
                return
            try:
                await self._poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Fallback poll for %s failed", self.topic, exc_info=True)

    async def _reconnect_loop(self) -> None:
        while self._running and self.state != ConnectionState.CONNECTED:
            await asyncio.sleep(self.reconnect_interval)
            if self.state == ConnectionState.CONNECTED:
                return
            if self._handle is None and not self.retry_pending and not _pending(self._subscribe_task):
                logger.info("No live subscription to %s, resubscribing", self.topic)
                self._schedule_subscribe(0)

    async def _release(self) -> None:
        handle, self._handle = self._handle, None
        # invalidate status reports from the released handle
        self._attempt += 1
        if handle is not None:
            await self._unsubscribe(handle)

    async def _unsubscribe(self, handle: Any) -> None:
        try:
            await self._feed.unsubscribe(handle)
        except Exception:
            logger.warning("Unsubscribe from %s failed", self.topic, exc_info=True)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("Connection state callback failed")

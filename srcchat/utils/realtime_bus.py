import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from srcchat.config import get_settings

logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]
OnStatus = Callable[["ChannelStatus"], None]


class ChannelStatus(str, Enum):

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CLOSED = "CLOSED"
    TIMED_OUT = "TIMED_OUT"


def conversation_topic(conversation_id: str) -> str:
    return f"chat_messages:conversation:{conversation_id}"


def user_topic(user_id: str) -> str:
    return f"chat_messages:user:{user_id}"


def _report(on_status: Optional[OnStatus], status: ChannelStatus) -> None:
    if on_status is None:
        return
    try:
        on_status(status)
    except Exception:
        logger.exception("Status callback failed for %s", status.value)


class LocalBus:
    """In-process fanout used when no Redis URL is configured."""

    enabled = True

    def __init__(self) -> None:
        self._queues: Dict[str, List[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, [])):
            queue.put_nowait(message)

    def subscriber_count(self, channel: str) -> int:
        return len(self._queues.get(channel, []))

    async def subscribe(self, channel: str, on_message: OnMessage, on_status: Optional[OnStatus] = None):
        bus = self
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(channel, []).append(queue)

        class _Sub:
            _running = True

            async def run(self_inner):
                if self_inner._running:
                    _report(on_status, ChannelStatus.SUBSCRIBED)
                try:
                    while self_inner._running:
                        data = await queue.get()
                        if data is None:
                            break
                        try:
                            await on_message(data)
                        except Exception:
                            logger.exception("Realtime handler failed on %s", channel)
                finally:
                    bus._detach(channel, queue)

            async def cancel(self_inner):
                if not self_inner._running:
                    return
                self_inner._running = False
                bus._detach(channel, queue)
                queue.put_nowait(None)
                _report(on_status, ChannelStatus.CLOSED)

        return _Sub()

    def _detach(self, channel: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(channel)
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            pass
        if not queues:
            del self._queues[channel]

    async def close(self) -> None:
        self._queues.clear()


class RedisBus:

    enabled = True

    def __init__(self, url: str, subscribe_timeout: float = 10.0) -> None:
        import redis.asyncio as redis

        self._redis = redis.from_url(url)
        self._subscribe_timeout = subscribe_timeout

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage, on_status: Optional[OnStatus] = None):
        pubsub = self._redis.pubsub()
        timeout = self._subscribe_timeout

        class _Sub:
            _running = True

            async def run(self_inner):
                try:
                    await asyncio.wait_for(pubsub.subscribe(channel), timeout)
                except asyncio.TimeoutError:
                    self_inner._running = False
                    _report(on_status, ChannelStatus.TIMED_OUT)
                    return
                except Exception:
                    logger.warning("Redis subscribe to %s failed", channel, exc_info=True)
                    self_inner._running = False
                    _report(on_status, ChannelStatus.CHANNEL_ERROR)
                    return
                _report(on_status, ChannelStatus.SUBSCRIBED)
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except Exception:
                        logger.warning("Redis subscription on %s broke", channel, exc_info=True)
                        self_inner._running = False
                        _report(on_status, ChannelStatus.CHANNEL_ERROR)
                        return
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        try:
                            await on_message(data)
                        except Exception:
                            logger.exception("Realtime handler failed on %s", channel)

            async def cancel(self_inner):
                was_running = self_inner._running
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except Exception:
                    logger.debug("Redis unsubscribe from %s failed", channel, exc_info=True)
                if was_running:
                    _report(on_status, ChannelStatus.CLOSED)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    settings = get_settings()
    if settings.redis_url:
        _bus = RedisBus(settings.redis_url, subscribe_timeout=settings.realtime_subscribe_timeout)
        logger.info("Realtime bus: redis")
    else:
        _bus = LocalBus()
        logger.info("Realtime bus: in-process")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None

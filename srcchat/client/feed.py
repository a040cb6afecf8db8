import asyncio
import inspect
import logging
from contextlib import suppress
from typing import Any, Optional

from pydantic import ValidationError

from srcchat.client.base import EventHandler, StatusHandler
from srcchat.schemas.chat import ChangeEvent
from srcchat.utils.realtime_bus import get_bus

logger = logging.getLogger(__name__)


class FeedHandle:

    def __init__(self, topic: str, subscription: Any, task: asyncio.Task) -> None:
        self.topic = topic
        self.subscription = subscription
        self.task = task


class BusFeed:
    """Row-change feed read from the realtime bus the API publishes on."""

    def __init__(self, bus=None) -> None:
        self._bus = bus

    async def subscribe(self, topic: str, on_event: EventHandler, on_status: StatusHandler) -> FeedHandle:
        bus = self._bus or await get_bus()

        async def _on_message(raw: str) -> None:
            try:
                event = ChangeEvent.model_validate_json(raw)
            except ValidationError:
                logger.warning("Dropping malformed change event on %s", topic)
                return
            result = on_event(event)
            if inspect.isawaitable(result):
                await result

        subscription = await bus.subscribe(topic, _on_message, on_status)
        task = asyncio.get_running_loop().create_task(subscription.run())
        return FeedHandle(topic, subscription, task)

    async def unsubscribe(self, handle: Optional[FeedHandle]) -> None:
        if handle is None:
            return
        await handle.subscription.cancel()
        if not handle.task.done() and handle.task is not asyncio.current_task():
            handle.task.cancel()
            with suppress(asyncio.CancelledError):
                await handle.task

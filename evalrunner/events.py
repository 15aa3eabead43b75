"""In-process event bus.

Emitters call ``publish`` and never wait on subscribers. Each subscriber owns a
bounded asyncio queue; when it is full the event is dropped for that subscriber
only and a warning is logged.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

from .config import EVENT_QUEUE_SIZE

logger = logging.getLogger(__name__)


@dataclass
class Event:
    name: str
    payload: Any = None
    timestamp: float = field(default_factory=time.time)


def topic_matches(pattern: str, name: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return name.startswith(pattern[:-1])
    return pattern == name


class Subscription:
    def __init__(self, bus: "EventBus", pattern: str, maxsize: int):
        self._bus = bus
        self.pattern = pattern
        self.queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("event %s dropped for subscriber %s (queue full)", event.name, self.pattern)

    async def get(self) -> Event:
        return await self.queue.get()

    def get_nowait(self) -> Optional[Event]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[Event]:
        events = []
        while True:
            ev = self.get_nowait()
            if ev is None:
                return events
            events.append(ev)

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self.queue.get()


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self, queue_size: int = EVENT_QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscriptions: List[Subscription] = []
        self._listeners: List[asyncio.Task] = []

    def publish(self, name: str, payload: Any = None) -> None:
        event = Event(name=name, payload=payload)
        for sub in list(self._subscriptions):
            if topic_matches(sub.pattern, name):
                sub.offer(event)

    def subscribe(self, pattern: str = "*", maxsize: Optional[int] = None) -> Subscription:
        sub = Subscription(self, pattern, maxsize or self._queue_size)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def listen(self, pattern: str, handler: Handler) -> asyncio.Task:
        """Run ``handler`` for every matching event on a dedicated task."""
        sub = self.subscribe(pattern)

        async def _consume():
            try:
                async for event in sub:
                    try:
                        res = handler(event)
                        if asyncio.iscoroutine(res):
                            await res
                    except Exception:
                        logger.exception("event handler for %s failed on %s", pattern, event.name)
            finally:
                sub.close()

        task = asyncio.create_task(_consume())
        self._listeners.append(task)
        return task

    async def shutdown(self) -> None:
        for task in self._listeners:
            task.cancel()
        await asyncio.gather(*self._listeners, return_exceptions=True)
        self._listeners.clear()
        self._subscriptions.clear()

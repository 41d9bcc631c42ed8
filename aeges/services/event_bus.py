"""
Event Bus: typed publish/subscribe per event kind.

Delivery model:
- Each subscription owns a bounded asyncio.Queue drained by its own task
- publish() never awaits; a full queue drops the event and counts it
- Events reach a subscriber in publish order
- A failing handler is logged and never affects other subscribers

A slow subscriber therefore never delays a containment decision.
"""

import asyncio
import inspect
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from aeges.config import settings
from aeges.schemas.events import Event, EventKind

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Event], Union[Awaitable[None], None]]


class Subscription:
    """A handler bound to one event kind."""

    def __init__(self, bus: "EventBus", kind: EventKind, handler: EventHandler, queue_size: int):
        self.kind = kind
        self.handler = handler
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self.delivered = 0
        self._bus = bus
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self in self._bus._subscribers.get(self.kind, [])

    def unsubscribe(self) -> None:
        self._bus._remove(self)

    def _ensure_worker(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._run(), name=f"event-sub-{self.kind}")

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result = self.handler(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    kind=str(self.kind),
                    event_id=event.event_id,
                    error=str(exc),
                )
            finally:
                self.queue.task_done()

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class EventBus:
    """
    In-process pub/sub channel.

    Each EventKind is its own channel; subscribers only see their kind.
    """

    def __init__(self, queue_size: Optional[int] = None, history_size: Optional[int] = None):
        self.queue_size = queue_size or settings.event_queue_size
        self._subscribers: dict[EventKind, list[Subscription]] = defaultdict(list)
        self._history: deque[Event] = deque(maxlen=history_size or settings.event_history_size)
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return sum(len(subs) for subs in self._subscribers.values())

    def subscribe(self, kind: EventKind, handler: EventHandler) -> Subscription:
        sub = Subscription(self, EventKind(kind), handler, self.queue_size)
        self._subscribers[sub.kind].append(sub)
        sub._ensure_worker()
        logger.debug("event_subscriber_added", kind=str(sub.kind), total=len(self._subscribers[sub.kind]))
        return sub

    def publish(self, kind: EventKind, payload: Optional[dict[str, Any]] = None) -> Event:
        """Fan an event out to every subscriber of ``kind`` without blocking."""
        event = Event(kind=kind, payload=payload or {})
        self._history.append(event)

        for sub in list(self._subscribers.get(event.kind, [])):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped += 1
                self.dropped += 1
                logger.warning(
                    "event_queue_full",
                    kind=str(event.kind),
                    event_id=event.event_id,
                    dropped=sub.dropped,
                )
                continue
            sub._ensure_worker()

        logger.debug("event_published", kind=str(event.kind), event_id=event.event_id)
        return event

    def history(self, limit: int = 50, kind: Optional[EventKind] = None) -> list[Event]:
        events = [e for e in self._history if kind is None or e.kind == kind]
        return events[-limit:] if limit > 0 else []

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub._ensure_worker()
                await sub.queue.join()

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub._cancel()
        self._subscribers.clear()
        logger.info("event_bus_closed")

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.kind, [])
        if sub in subs:
            subs.remove(sub)
            logger.debug("event_subscriber_removed", kind=str(sub.kind), remaining=len(subs))
        sub._cancel()

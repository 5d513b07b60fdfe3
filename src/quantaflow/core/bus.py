"""
Asyncio-based event bus connecting the orchestrator, the transport and observers.

Publishing is synchronous and never blocks: the event is stamped, paired with
the handlers registered at that instant and queued. A single dispatcher task
delivers queued events in emission order, calling handlers one after another
in registration order, so every subscriber observes each kind in the order it
was emitted.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .contracts import PAYLOAD_TYPES, BasePayload, BusStatus, Event, EventKind
from .errors import HandlerError

logger = logging.getLogger(__name__)


Handler = Callable[[Event], Awaitable[None] | None]

_handle_ids = itertools.count(1)


@dataclass(frozen=True, eq=False)
class Subscription:
    """Handle for exactly one (kind -> handler) registration."""

    kind: EventKind
    handler: Handler
    handle_id: int = field(default_factory=lambda: next(_handle_ids))


class _StopSignal:
    """Sentinel queued to end the dispatcher loop."""


_STOP = _StopSignal()


class EventBus:
    """
    Typed publish/subscribe bus.

    There is no history: a handler only receives events published after it
    subscribed, and a handler that unsubscribes receives nothing further, even
    for events already queued.
    """

    def __init__(self, *, queue_size: int = 0) -> None:
        self._queue: asyncio.Queue[tuple[Event, tuple[Subscription, ...]] | _StopSignal] = (
            asyncio.Queue(maxsize=queue_size)
        )
        self._subscribers: dict[EventKind, list[Subscription]] = defaultdict(list)
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._sequence = itertools.count(1)
        self._published_total = 0
        self._processed_total = 0
        self._dropped_total = 0
        self._handler_failures_total = 0

    @property
    def running(self) -> bool:
        return self._dispatcher_task is not None

    def subscribe(self, kind: EventKind | str, handler: Handler) -> Subscription:
        """Register a sync or async handler for one event kind."""
        subscription = Subscription(kind=EventKind(kind), handler=handler)
        self._subscribers[subscription.kind].append(subscription)
        logger.debug("Subscribed handler %s to %s", handler, subscription.kind.value)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach one registration. Calling it twice is a no-op."""
        handlers = self._subscribers.get(subscription.kind, [])
        if subscription in handlers:
            handlers.remove(subscription)
            logger.debug(
                "Unsubscribed handler %s from %s", subscription.handler, subscription.kind.value
            )

    def is_subscribed(self, subscription: Subscription) -> bool:
        return subscription in self._subscribers.get(subscription.kind, [])

    def publish(self, kind: EventKind | str, data: BasePayload) -> Event | None:
        """
        Queue an event for delivery.

        Returns the stamped event, or None when a bounded queue is full and the
        event had to be dropped.
        """
        event_kind = EventKind(kind)
        expected = PAYLOAD_TYPES[event_kind]
        if not isinstance(data, expected):
            raise TypeError(
                f"{event_kind.value} events carry {expected.__name__}, got {type(data).__name__}"
            )
        event = Event(kind=event_kind, data=data, sequence=next(self._sequence))
        targets = tuple(self._subscribers.get(event_kind, ()))
        try:
            self._queue.put_nowait((event, targets))
        except asyncio.QueueFull:
            self._dropped_total += 1
            logger.warning("Event bus queue is full; dropping %s event.", event_kind.value)
            return None
        self._published_total += 1
        return event

    async def start(self) -> None:
        """Start the dispatcher loop."""
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(self._dispatcher(), name="quantaflow-bus")
            logger.info("Event bus dispatcher started.")

    async def stop(self) -> None:
        """Deliver everything queued so far, then stop the dispatcher."""
        if self._dispatcher_task is None:
            return
        await self._queue.put(_STOP)
        await self._dispatcher_task
        self._dispatcher_task = None
        logger.info("Event bus dispatcher stopped.")

    async def join(self) -> None:
        """Wait until every queued event has been handed to its handlers."""
        if self._dispatcher_task is None:
            return
        await self._queue.join()

    def stats(self) -> BusStatus:
        return BusStatus(
            queue_depth=self._queue.qsize(),
            queue_capacity=self._queue.maxsize,
            subscriber_count=sum(len(subs) for subs in self._subscribers.values()),
            published_total=self._published_total,
            processed_total=self._processed_total,
            dropped_total=self._dropped_total,
            handler_failures_total=self._handler_failures_total,
        )

    async def _dispatcher(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, _StopSignal):
                    break
                event, targets = item
                for subscription in targets:
                    if not self.is_subscribed(subscription):
                        continue
                    await self._deliver(subscription, event)
                self._processed_total += 1
            finally:
                self._queue.task_done()

    async def _deliver(self, subscription: Subscription, event: Event) -> None:
        try:
            result = subscription.handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._handler_failures_total += 1
            failure = HandlerError(subscription.handler, exc)
            logger.exception(
                "Subscriber handler failed on %s: %s", event.kind.value, failure, exc_info=exc
            )


__all__ = ["EventBus", "Handler", "Subscription"]

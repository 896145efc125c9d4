"""Typed event bus connecting the orchestrator components.

Components publish ``Event`` records; the orchestrator subscribes handlers
(milestone checks on issue closure, notifications). Delivery goes through a
bounded ``asyncio.Queue`` drained by a single dispatcher task:

- Ordering: events are delivered in publish order (FIFO), and each event is
  delivered to its subscribers in subscription order before the next event.
- Back-pressure: ``publish`` waits when the queue is full. Events published
  by a handler never wait: they are held in an overflow buffer and delivered
  right after the event being handled, before the next queued event.
- Isolation: a failing handler is logged and does not affect other handlers
  or the publisher.

Example:
    >>> bus = EventBus(max_queue_size=100)
    >>> bus.subscribe(EventType.MILESTONE_CLOSED, notify)
    >>> await bus.start()
    >>> await bus.publish(Event(EventType.MILESTONE_CLOSED, {"milestone": 3}, source="milestones"))
    >>> await bus.drain()
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Every event the orchestrator components emit."""

    ISSUE_RECEIVED = "issue.received"
    ISSUE_CLASSIFIED = "issue.classified"
    ISSUE_ROUTED = "issue.routed"
    ISSUE_CLOSED = "issue.closed"
    BRANCH_CREATED = "branch.created"
    PR_CREATED = "pr.created"
    CONFLICTS_DETECTED = "conflicts.detected"
    PROJECT_CREATED = "project.created"
    PROJECT_CREATION_FAILED = "project.creation_failed"
    PROJECTS_BULK_COMPLETED = "projects.bulk_completed"
    WORKFLOW_COMPLETED = "workflow.completed"
    MILESTONE_CHECKED = "milestone.checked"
    MILESTONE_CLOSED = "milestone.closed"
    ERROR = "error"


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], Awaitable[None]]

_STOP = object()


class EventBus:
    """Bounded, single-dispatcher publish/subscribe bus."""

    def __init__(self, max_queue_size: int = 1000) -> None:
        self.max_queue_size = max_queue_size
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue_size)
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._wildcard: list[EventHandler] = []
        self._dispatcher: asyncio.Task[None] | None = None
        self._overflow: deque[Event] = deque()
        self.published = 0
        self.delivered = 0
        self.handler_failures = 0

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._overflow)

    def subscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Register ``handler`` for ``event_type``; ``None`` subscribes to every event."""
        if event_type is None:
            self._wildcard.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        handlers = self._wildcard if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def start(self) -> None:
        if self.is_running:
            return
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="devflow-event-dispatcher")
        log.debug("event_bus_started", max_queue_size=self.max_queue_size)

    async def publish(self, event: Event) -> None:
        """Enqueue ``event``, waiting while the queue is full.

        Called from a handler, the event goes to the overflow buffer instead;
        the dispatcher is the only consumer and cannot wait on itself.
        """
        if self._dispatcher is not None and asyncio.current_task() is self._dispatcher:
            self._overflow.append(event)
        else:
            await self._queue.put(event)
        self.published += 1

    async def drain(self) -> None:
        """Wait until every event published so far has been delivered."""
        if not self.is_running:
            return
        await self._queue.join()

    async def stop(self) -> None:
        """Deliver queued events, then stop the dispatcher."""
        dispatcher = self._dispatcher
        if dispatcher is None or dispatcher.done():
            return
        await self._queue.put(_STOP)
        await dispatcher
        self._dispatcher = None
        log.debug("event_bus_stopped", published=self.published, delivered=self.delivered)

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._deliver(item)
                while self._overflow:
                    await self._deliver(self._overflow.popleft())
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        for handler in [*self._handlers.get(event.type, []), *self._wildcard]:
            try:
                await handler(event)
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.handler_failures += 1
                log.warning(
                    "event_handler_failed",
                    event_type=event.type.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "pending": self.pending,
            "published": self.published,
            "delivered": self.delivered,
            "handler_failures": self.handler_failures,
        }

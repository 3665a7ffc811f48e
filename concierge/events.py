"""
Event Bus — the notification channel.

Typed events are Pydantic models emitted onto an asyncio.Queue-backed
dispatcher that fans out to pattern-matched subscribers. Every event that
concerns a tenant carries its ``owner`` and is published on the owner-scoped
topic ``<owner>.<event_type>``, so a presentation layer can subscribe to
``"alice.turn.*"`` and never see another tenant's traffic.

Concurrency model:
  - emit() only enqueues, so it is safe to call from sync code; calls from
    other threads are marshalled onto the bus's loop
  - A dispatcher task dequeues and fans out to matching handlers
  - Handler exceptions are logged but do not propagate
  - Ordering guarantee: events dispatched in emission order
"""

from __future__ import annotations

import asyncio
import fnmatch as _fnmatch_mod
import re
import uuid
from typing import Any, Callable, Coroutine, Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EventHandler = Callable[["ConciergeEvent"], Any] | Callable[
    ["ConciergeEvent"], Coroutine[Any, Any, Any]
]

# Splits CamelCase including consecutive capitals (acronyms).
# "TurnCompleted" → ["Turn", "Completed"]
_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")


class ConciergeEvent(BaseModel):
    """Base class for all typed events."""

    event_type: str = ""
    owner: Optional[str] = None

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            name = type(self).__name__.removesuffix("Event")
            parts = _CAMEL_SPLIT_RE.findall(name)
            self.event_type = ".".join(p.lower() for p in parts) if parts else name.lower()

    @property
    def topic(self) -> str:
        """Owner-scoped topic; events without an owner publish on the bare type."""
        if self.owner is None:
            return self.event_type
        return f"{self.owner}.{self.event_type}"


class _Subscription:
    """Internal subscription record."""

    __slots__ = ("sub_id", "pattern", "handler", "_compiled")

    def __init__(self, sub_id: str, pattern: str, handler: EventHandler) -> None:
        self.sub_id = sub_id
        self.pattern = pattern
        self.handler = handler
        self._compiled: re.Pattern[str] = re.compile(_fnmatch_mod.translate(pattern))

    def matches(self, topic: str) -> bool:
        return self._compiled.match(topic) is not None


_SENTINEL = object()


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class EventBus:
    """Minimal async event bus with typed events and wildcard subscriptions.

    Patterns are matched against ``event.topic`` with fnmatch-style wildcards:
      "alice.turn.*"      alice's turn.completed / turn.failed
      "*.tool.executing"  tool progress for every owner
      "*"                 everything
    """

    def __init__(self, max_queue_size: int = 10000) -> None:
        self._queue: asyncio.Queue[ConciergeEvent | object] = asyncio.Queue(
            maxsize=max_queue_size,
        )
        self._subscriptions: dict[str, _Subscription] = {}
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._running = False
        self._pending_done: dict[int, asyncio.Event] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatcher task."""
        if self._running:
            return
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._dispatcher_task = asyncio.create_task(
            self._dispatch_loop(), name="event-bus-dispatcher"
        )
        logger.info("event_bus.started")

    async def stop(self) -> None:
        """Drain the queue and stop the dispatcher."""
        if not self._running:
            return
        self._running = False
        try:
            self._queue.put_nowait(_SENTINEL)
        except asyncio.QueueFull:
            logger.warning("event_bus.stop_queue_full_cancelling_directly")
            if self._dispatcher_task is not None:
                self._dispatcher_task.cancel()
        if self._dispatcher_task is not None:
            try:
                await asyncio.wait_for(self._dispatcher_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("event_bus.stop_timeout_cancelling", timeout=5.0)
                self._dispatcher_task.cancel()
                try:
                    await self._dispatcher_task
                except asyncio.CancelledError:
                    pass
            except asyncio.CancelledError:
                pass
            self._dispatcher_task = None
        for done_event in self._pending_done.values():
            done_event.set()
        self._pending_done.clear()
        self._loop = None
        logger.info("event_bus.stopped")

    # ------------------------------------------------------------------
    # Subscribe / Unsubscribe
    # ------------------------------------------------------------------

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe to topics matching a fnmatch-style pattern.

        Returns a subscription ID that can be passed to unsubscribe().
        """
        sub_id = uuid.uuid4().hex[:12]
        self._subscriptions[sub_id] = _Subscription(sub_id, pattern, handler)
        logger.debug("event_bus.subscribed", pattern=pattern, sub_id=sub_id)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription by its ID."""
        removed = self._subscriptions.pop(subscription_id, None)
        if removed:
            logger.debug("event_bus.unsubscribed", sub_id=subscription_id)

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    def emit(self, event: ConciergeEvent) -> None:
        """Queue an event for the dispatcher without blocking.

        Safe to call from worker threads (sync tool handlers run on one): the
        enqueue is handed to the bus's loop. If the queue is full the event is
        dropped with a warning log.
        """
        loop = self._loop
        if loop is not None and not _on_loop(loop):
            try:
                loop.call_soon_threadsafe(self._enqueue, event)
            except RuntimeError:
                # Loop already closed: shutdown raced the emitting thread.
                logger.warning("event_bus.loop_closed", topic=event.topic, dropped=True)
            return
        self._enqueue(event)

    def _enqueue(self, event: ConciergeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "event_bus.queue_full",
                topic=event.topic,
                dropped=True,
            )

    publish = emit

    async def emit_async(self, event: ConciergeEvent) -> None:
        """Emit an event and await until it has been fully dispatched.

        Raises RuntimeError if the bus is not running.
        """
        if not self._running:
            raise RuntimeError("emit_async called on a stopped EventBus")
        done = asyncio.Event()
        event_id = id(event)
        self._pending_done[event_id] = done
        self.emit(event)
        try:
            await asyncio.wait_for(done.wait(), timeout=10.0)
        finally:
            self._pending_done.pop(event_id, None)

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        """Deliver queued events in emission order; flush the backlog on stop."""
        while self._running:
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                break
            if item is _SENTINEL:
                break
            await self._deliver(item)  # type: ignore[arg-type]

        for leftover in self._drain():
            await self._deliver(leftover)

    def _drain(self) -> list[ConciergeEvent]:
        backlog: list[ConciergeEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return backlog
            if item is not _SENTINEL:
                backlog.append(item)  # type: ignore[arg-type]

    async def _deliver(self, event: ConciergeEvent) -> None:
        topic = event.topic
        matching = [sub for sub in self._subscriptions.values() if sub.matches(topic)]
        if matching:
            await asyncio.gather(
                *(self._invoke_handler(sub, event) for sub in matching),
                return_exceptions=True,
            )
        waiter = self._pending_done.get(id(event))
        if waiter is not None:
            waiter.set()

    @staticmethod
    async def _invoke_handler(sub: _Subscription, event: ConciergeEvent) -> None:
        """Invoke a handler with exception isolation."""
        try:
            result = sub.handler(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.error(
                "event_bus.handler_error",
                pattern=sub.pattern,
                topic=event.topic,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def is_running(self) -> bool:
        return self._running


def create_event_bus(max_queue_size: int = 10000) -> EventBus:
    """Factory function to create an EventBus instance."""
    return EventBus(max_queue_size=max_queue_size)


# ---------------------------------------------------------------------------
# Event Definitions
# ---------------------------------------------------------------------------

class TurnCompletedEvent(ConciergeEvent):
    """A chat turn produced its final answer and it was persisted."""

    turn_id: str
    content: str
    iterations: int
    tool_calls: int


class TurnFailedEvent(ConciergeEvent):
    """A chat turn aborted; nothing was persisted for it."""

    turn_id: str
    error: str
    error_kind: str


class ToolExecutingEvent(ConciergeEvent):
    """Per-tool progress inside a turn or orchestration pass."""

    tool_name: str
    tool_use_id: str
    iteration: int


class TaskCreatedEvent(ConciergeEvent):
    """A deferred task was created."""

    task_id: str
    description: str


class TaskUpdatedEvent(ConciergeEvent):
    """A task's status or context changed."""

    task_id: str
    status: str
    version: int
    changed_keys: list[str] = Field(default_factory=list)


class OrchestrationPassCompletedEvent(ConciergeEvent):
    """One owner's scheduled orchestration pass finished (successfully or not)."""

    succeeded: bool
    active_tasks: int
    waiting_tasks: int
    new_events: int
    error: Optional[str] = None

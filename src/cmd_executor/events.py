"""Executor event models and the observer channel.

The executor reports non-fatal diagnostics here instead of raising:
- error: handler failures, stop failures, failed executions
- warning: stderr captured from a buffered run that exited with code 0

Emission is fire-and-forget. Subscribers never block or break the executor.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "EventKind",
    "ExecutorEvent",
    "EventSubscriber",
    "EventChannel",
    "make_event_id",
]

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class EventKind(str, Enum):
    """Event names emitted by the executor."""

    ERROR = "error"
    WARNING = "warning"


def make_event_id(kind: str = "event") -> str:
    """Generate an event ID: {kind}_{short uuid}."""
    return f"{kind}_{uuid.uuid4().hex[:8]}"


class ExecutorEvent(BaseModel):
    """A diagnostic event.

    Attributes:
        event_id: Unique ID
        timestamp: Unix timestamp (seconds)
        kind: error or warning
        message: Diagnostic message, or captured stderr for warnings
        process_id: Process the event relates to (if any)
        error: Originating exception (not serialized)
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        frozen=True,
    )

    event_id: str = Field(default_factory=make_event_id)
    timestamp: float = Field(default_factory=time.time)
    kind: EventKind
    message: str
    process_id: str | None = None
    error: BaseException | None = Field(default=None, exclude=True)


EventSubscriber = Callable[[ExecutorEvent], Any]


def _normalize_kinds(kinds: Iterable[EventKind | str] | EventKind | str | None) -> frozenset[EventKind] | None:
    if kinds is None:
        return None
    if isinstance(kinds, (str, EventKind)):
        kinds = [kinds]
    return frozenset(EventKind(k) for k in kinds)


class EventChannel:
    """Per-executor observer list for diagnostic events.

    Subscribers are plain callables or coroutine functions. A coroutine
    subscriber is scheduled as a task on the running loop; exceptions raised
    by any subscriber are logged and dropped.

    Example:
        channel = EventChannel()
        unsubscribe = channel.subscribe(print, kinds="warning")

        queue = channel.open_queue(maxsize=100)
        event = await queue.get()
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventSubscriber, frozenset[EventKind] | None]] = []
        self._queues: list[tuple[asyncio.Queue[ExecutorEvent], frozenset[EventKind] | None]] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(
        self,
        callback: EventSubscriber,
        kinds: Iterable[EventKind | str] | EventKind | str | None = None,
    ) -> Callable[[], bool]:
        """Register a subscriber.

        Args:
            callback: Called with each matching ExecutorEvent
            kinds: Event kinds to receive (None = all)

        Returns:
            A function that removes this subscription
        """
        self._subscribers.append((callback, _normalize_kinds(kinds)))
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: EventSubscriber) -> bool:
        """Remove every subscription of callback. Returns whether any existed."""
        before = len(self._subscribers)
        self._subscribers = [(cb, k) for cb, k in self._subscribers if cb != callback]
        return len(self._subscribers) != before

    def open_queue(
        self,
        maxsize: int = DEFAULT_QUEUE_SIZE,
        kinds: Iterable[EventKind | str] | EventKind | str | None = None,
    ) -> asyncio.Queue[ExecutorEvent]:
        """Open a bounded queue that receives matching events.

        When the queue is full new events are dropped for that queue only.
        """
        queue: asyncio.Queue[ExecutorEvent] = asyncio.Queue(maxsize=maxsize)
        self._queues.append((queue, _normalize_kinds(kinds)))
        return queue

    def close_queue(self, queue: asyncio.Queue[ExecutorEvent]) -> None:
        """Stop feeding a queue opened with open_queue()."""
        self._queues = [(q, k) for q, k in self._queues if q is not queue]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers) + len(self._queues)

    def emit(self, event: ExecutorEvent) -> None:
        """Deliver event to all matching subscribers and queues."""
        log = logger.warning if event.kind is EventKind.ERROR else logger.info
        log(f"[{event.kind.value}] {event.message.rstrip()}"
            + (f" (process={event.process_id})" if event.process_id else ""))

        for callback, kinds in list(self._subscribers):
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as e:
                logger.warning(f"Error in event subscriber {callback!r}: {e}")

        for queue, kinds in list(self._queues):
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Event queue full, dropped {event.event_id}")

    def error(self, message: str, *, process_id: str | None = None, error: BaseException | None = None) -> None:
        """Emit an error event."""
        self.emit(ExecutorEvent(kind=EventKind.ERROR, message=message, process_id=process_id, error=error))

    def warning(self, message: str, *, process_id: str | None = None) -> None:
        """Emit a warning event."""
        self.emit(ExecutorEvent(kind=EventKind.WARNING, message=message, process_id=process_id))

    async def drain(self) -> None:
        """Wait for scheduled coroutine subscribers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable: Any) -> None:
        async def _run() -> None:
            try:
                await awaitable
            except Exception as e:
                logger.warning(f"Error in async event subscriber: {e}")

        try:
            task = asyncio.get_running_loop().create_task(_run())
        except RuntimeError:
            # No running loop; close the coroutine so it is not left pending
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.debug("No running loop, async event subscriber skipped")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

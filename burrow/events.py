"""Event sinks receiving task events for real-time delivery."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine, Iterable
from typing import Any, Protocol

from .models import TaskEvent

logger = logging.getLogger("burrow.events")


class EventSink(Protocol):
    async def publish(self, task_id: str, event: TaskEvent) -> None: ...


class NoOpEventSink:
    async def publish(self, task_id: str, event: TaskEvent) -> None:
        _ = task_id, event
        return None


class FanoutEventSink:
    """Publishes each event to several sinks in order; a failing sink is logged and skipped."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self._sinks = list(sinks)

    async def publish(self, task_id: str, event: TaskEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.publish(task_id, event)
            except Exception:
                logger.exception("event_sink_failed", extra={"task_id": task_id, "sink": type(sink).__name__})


class TaskEventBroker:
    """In-memory pub/sub keyed by task id.

    Each subscriber owns an unbounded queue, so events reach every subscriber
    in publish order without coalescing.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[TaskEvent]]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(
        self, task_id: str
    ) -> tuple[asyncio.Queue[TaskEvent], Callable[[], Coroutine[Any, Any, None]]]:
        queue: asyncio.Queue[TaskEvent] = asyncio.Queue()
        async with self._lock:
            self._subscribers.setdefault(task_id, set()).add(queue)

        async def _unsubscribe() -> None:
            async with self._lock:
                subscribers = self._subscribers.get(task_id)
                if subscribers is None:
                    return
                subscribers.discard(queue)
                if not subscribers:
                    self._subscribers.pop(task_id, None)

        return queue, _unsubscribe

    async def publish(self, task_id: str, event: TaskEvent) -> None:
        for queue in list(self._subscribers.get(task_id, ())):
            queue.put_nowait(event)

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, ()))


async def iterate_until_terminal(
    queue: asyncio.Queue[TaskEvent],
    unsubscribe: Callable[[], Coroutine[Any, Any, None]],
) -> AsyncIterator[TaskEvent]:
    """Yield queued events until the task's terminal status event."""
    try:
        while True:
            event = await queue.get()
            yield event
            if event.terminal:
                break
    finally:
        await unsubscribe()


__all__ = [
    "EventSink",
    "FanoutEventSink",
    "NoOpEventSink",
    "TaskEventBroker",
    "iterate_until_terminal",
]

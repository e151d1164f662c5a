"""Event sinks: where tasks publish status and artifact updates.

The engine only depends on `EventSink.publish`. `EventQueue` is the
transport-side implementation: it fans every event out to any number of
subscribers so a client can resubscribe to a running execution.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Protocol

from coder_agent.models import TaskArtifactUpdateEvent, TaskStatusUpdateEvent

logger = logging.getLogger(__name__)

Event = TaskStatusUpdateEvent | TaskArtifactUpdateEvent


class EventSink(Protocol):
    def publish(self, event: Event) -> None: ...


class EventQueue:
    """Fan-out sink for one execution; subscribers read until a final event."""

    def __init__(self, *, on_final: Callable[[TaskStatusUpdateEvent], None] | None = None) -> None:
        self._subscribers: list[asyncio.Queue[Event | None]] = []
        self._closed = False
        self._on_final = on_final
        self.last_event: Event | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: Event) -> None:
        if self._closed:
            logger.warning(
                "event_queue event=publish_after_close task_id=%s kind=%s",
                event.task_id,
                event.kind,
            )
            return
        self.last_event = event
        for queue in list(self._subscribers):
            queue.put_nowait(event)
        if self._on_final is not None and isinstance(event, TaskStatusUpdateEvent) and event.final:
            self._on_final(event)

    def subscribe(self) -> asyncio.Queue[Event | None]:
        queue: asyncio.Queue[Event | None] = asyncio.Queue()
        if self._closed:
            queue.put_nowait(None)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event | None]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)

    async def stream(self, queue: asyncio.Queue[Event | None] | None = None) -> AsyncIterator[Event]:
        """Yield events until the first final status update or until closed."""
        subscription = queue if queue is not None else self.subscribe()
        try:
            while True:
                event = await subscription.get()
                if event is None:
                    return
                yield event
                if isinstance(event, TaskStatusUpdateEvent) and event.final:
                    return
        finally:
            self.unsubscribe(subscription)

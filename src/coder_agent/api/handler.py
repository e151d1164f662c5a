"""Transport-side request handling on top of the task executor.

Beginner terms used in this file:
- Live queue: the per-task EventQueue every execution of that task publishes to.
- Checkpoint: a store save of the task snapshot (after final events and runs).
- Connection: close notifications for one streaming HTTP request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from fastapi import Request

from coder_agent.agent.executor import RequestContext, TaskExecutor
from coder_agent.errors import CoderAgentError, TaskNotFound
from coder_agent.events import Event, EventQueue
from coder_agent.models import (
    Message,
    TaskSnapshot,
    TaskStatusUpdateEvent,
    failed_status_event,
    new_id,
)
from coder_agent.storage.base import TaskStore

logger = logging.getLogger(__name__)


class RequestConnection:
    """Close notifications for one streaming request.

    `close()` fires listeners once (client went away or the stream was torn down);
    `release()` drops them without firing once the stream completed normally.
    """

    def __init__(self, request: Request | None = None, *, poll_s: float = 0.25) -> None:
        self._request = request
        self._poll_s = poll_s
        self._listeners: list[Callable[[], None]] = []
        self._closed = False
        self._watcher: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_listener(self, listener: Callable[[], None]) -> None:
        if self._closed:
            listener()
            return
        self._listeners.append(listener)

    def remove_close_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        if self._request is not None and self._watcher is None:
            self._watcher = asyncio.create_task(self._watch_disconnect())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_watcher()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener()

    def release(self) -> None:
        self._stop_watcher()
        self._listeners.clear()

    async def _watch_disconnect(self) -> None:
        assert self._request is not None
        while not self._closed:
            if await self._request.is_disconnected():
                logger.info("request_connection event=disconnected path=%s", self._request.url.path)
                self._watcher = None
                self.close()
                return
            await asyncio.sleep(self._poll_s)

    def _stop_watcher(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()


class _CollectingSink:
    """Records events and forwards them to the task's live queue, if any."""

    def __init__(self, forward: EventQueue | None = None) -> None:
        self.events: list[Event] = []
        self._forward = forward

    def publish(self, event: Event) -> None:
        self.events.append(event)
        if self._forward is not None:
            self._forward.publish(event)


class RequestHandler:
    def __init__(
        self,
        *,
        executor: TaskExecutor,
        store: TaskStore,
        disconnect_poll_s: float = 0.25,
    ) -> None:
        self.executor = executor
        self.store = store
        self.disconnect_poll_s = disconnect_poll_s
        self._queues: dict[str, EventQueue] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # send-message
    # ------------------------------------------------------------------

    async def on_message_stream(
        self, message: Message, request: Request | None = None
    ) -> AsyncIterator[Event]:
        """Run one message and yield its events up to the first final one."""
        task_id = message.task_id or new_id()
        message = message.model_copy(update={"task_id": task_id})

        snapshot: TaskSnapshot | None = None
        if self.executor.get_task(task_id) is None:
            try:
                snapshot = await self.store.load(task_id)
            except (CoderAgentError, ValueError) as exc:
                logger.error("request_handler event=load_failed task_id=%s error=%s", task_id, exc)
                yield failed_status_event(
                    f"Failed to load task {task_id}: {exc}",
                    task_id=task_id,
                    context_id=message.context_id or new_id(),
                )
                return

        queue = self._queue_for(task_id)
        subscription = queue.subscribe()
        connection = RequestConnection(request, poll_s=self.disconnect_poll_s)
        connection.start()
        context = RequestContext(user_message=message, task=snapshot, connection=connection)
        self._spawn(self._execute(context, queue, subscription))

        saw_final = False
        try:
            async for event in queue.stream(subscription):
                yield event
                if isinstance(event, TaskStatusUpdateEvent) and event.final:
                    saw_final = True
            if not saw_final:
                task = self.executor.get_task(task_id)
                if task is not None:
                    saw_final = True
                    yield task.status_event(final=True)
        finally:
            if saw_final:
                connection.release()
            else:
                # Stream torn down before the execution finished: abort it.
                connection.close()

    async def _execute(
        self,
        context: RequestContext,
        queue: EventQueue,
        subscription: asyncio.Queue[Event | None],
    ) -> None:
        task_id = context.user_message.task_id or ""
        try:
            await self.executor.execute(context, queue)
        except CoderAgentError as exc:
            logger.warning("request_handler event=execute_rejected task_id=%s error=%s", task_id, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("request_handler event=execute_failed task_id=%s", task_id)
            queue.publish(
                failed_status_event(
                    f"Agent execution error: {exc}",
                    task_id=task_id,
                    context_id=context.user_message.context_id or new_id(),
                )
            )
        finally:
            if not self.executor.is_executing(task_id):
                # Nothing else will publish for this request; end its stream.
                subscription.put_nowait(None)
                # Open streams keep their own reference; the next request gets a new queue.
                if self._queues.get(task_id) is queue:
                    del self._queues[task_id]
            await self.checkpoint(task_id)

    # ------------------------------------------------------------------
    # get-task / cancel-task / resubscribe / history
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> TaskSnapshot:
        task = self.executor.get_task(task_id)
        if task is not None:
            return self.executor.to_snapshot(task)
        snapshot = await self.store.load(task_id)
        if snapshot is None:
            raise TaskNotFound(task_id)
        return snapshot

    async def cancel(self, task_id: str) -> Event:
        await self._ensure_in_memory(task_id)
        sink = _CollectingSink(self._queues.get(task_id))
        await self.executor.cancel_task(task_id, sink)
        return sink.events[-1]

    async def resubscribe(self, task_id: str) -> AsyncIterator[Event]:
        task = self.executor.get_task(task_id)
        if task is None:
            snapshot = await self.get_task(task_id)
            yield TaskStatusUpdateEvent(
                task_id=snapshot.id,
                context_id=snapshot.context_id,
                status=snapshot.status,
                final=True,
                agent_event="state-change",
            )
            return

        queue = self._queues.get(task_id)
        if queue is not None and self.executor.is_executing(task_id):
            async for event in queue.stream():
                yield event
            return
        yield task.status_event(final=True)

    async def context_history(self, context_id: str) -> list[Message]:
        return await self.store.get_context_history(context_id)

    # ------------------------------------------------------------------
    # Checkpoints and bookkeeping
    # ------------------------------------------------------------------

    async def checkpoint(self, task_id: str) -> None:
        task = self.executor.get_task(task_id)
        if task is None:
            return
        try:
            await self.store.save(self.executor.to_snapshot(task))
        except (CoderAgentError, ValueError) as exc:
            logger.error("request_handler event=checkpoint_failed task_id=%s error=%s", task_id, exc)

    async def drain(self) -> None:
        """Wait for background executions and checkpoints (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _queue_for(self, task_id: str) -> EventQueue:
        queue = self._queues.get(task_id)
        if queue is None:
            queue = EventQueue(on_final=lambda event: self._spawn(self.checkpoint(event.task_id)))
            self._queues[task_id] = queue
        return queue

    async def _ensure_in_memory(self, task_id: str) -> None:
        if self.executor.get_task(task_id) is not None:
            return
        try:
            snapshot = await self.store.load(task_id)
            if snapshot is not None:
                self.executor.reconstruct(snapshot)
        except (CoderAgentError, ValueError) as exc:
            logger.error("request_handler event=load_failed task_id=%s error=%s", task_id, exc)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

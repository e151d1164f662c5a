from __future__ import annotations

import asyncio

import pytest

from coder_agent.cancellation import DEFAULT_ABORT_REASON, CancellationToken
from coder_agent.errors import ExecutionAborted
from coder_agent.events import EventQueue
from coder_agent.models import TaskStatus, TaskStatusUpdateEvent


def _status(state: str, *, final: bool = False) -> TaskStatusUpdateEvent:
    return TaskStatusUpdateEvent(
        task_id="T1", context_id="C1", status=TaskStatus(state=state), final=final
    )


@pytest.mark.asyncio
async def test_guard_returns_result_when_not_cancelled() -> None:
    async def work() -> int:
        await asyncio.sleep(0)
        return 7

    assert await CancellationToken().guard(work()) == 7


@pytest.mark.asyncio
async def test_guard_aborts_pending_work_when_token_fires() -> None:
    token = CancellationToken()
    never = asyncio.Event()
    guarded = asyncio.create_task(token.guard(never.wait()))
    await asyncio.sleep(0)

    token.cancel("client went away")

    with pytest.raises(ExecutionAborted, match="client went away"):
        await guarded


@pytest.mark.asyncio
async def test_iterate_closes_source_on_abort() -> None:
    token = CancellationToken()
    closed = asyncio.Event()

    async def source():
        try:
            yield 1
            await asyncio.Event().wait()
            yield 2
        finally:
            closed.set()

    seen = []
    with pytest.raises(ExecutionAborted):
        async for item in token.iterate(source()):
            seen.append(item)
            token.cancel()

    assert seen == [1]
    assert closed.is_set()
    assert token.reason == DEFAULT_ABORT_REASON


def test_cancel_is_terminal_and_runs_callbacks_once() -> None:
    token = CancellationToken()
    calls: list[str] = []
    token.add_callback(lambda: calls.append("first"))

    token.cancel("one")
    token.cancel("two")
    token.add_callback(lambda: calls.append("late"))

    assert token.cancelled
    assert token.reason == "one"
    assert calls == ["first", "late"]


@pytest.mark.asyncio
async def test_event_queue_stream_stops_at_first_final_event() -> None:
    finals: list[TaskStatusUpdateEvent] = []
    queue = EventQueue(on_final=finals.append)
    subscription = queue.subscribe()

    queue.publish(_status("working"))
    queue.publish(_status("input-required", final=True))
    queue.publish(_status("working"))

    received = [event.status.state async for event in queue.stream(subscription)]

    assert received == ["working", "input-required"]
    assert [event.status.state for event in finals] == ["input-required"]
    assert queue.last_event.status.state == "working"


@pytest.mark.asyncio
async def test_event_queue_close_ends_streams() -> None:
    queue = EventQueue()
    subscription = queue.subscribe()
    queue.publish(_status("working"))
    queue.close()
    queue.publish(_status("failed", final=True))

    received = [event.status.state async for event in queue.stream(subscription)]

    assert received == ["working"]
    assert queue.closed

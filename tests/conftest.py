from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from coder_agent.agent.executor import TaskExecutor
from coder_agent.cancellation import CancellationToken
from coder_agent.config.settings import get_settings
from coder_agent.events import Event
from coder_agent.llm import ConversationSession, FinishedEvent, ModelContent, ModelEvent, ModelPart
from coder_agent.models import AgentSettings, DataPart, Message, TaskStatusUpdateEvent, TextPart
from coder_agent.tools.registry import ToolSpec, build_registry
from coder_agent.tools.scheduler import ToolScheduler
from coder_agent.tools.schemas import ReadFileInput, ReadFileOutput


class ScriptedSession(ConversationSession):
    """Plays back one scripted turn per model call.

    A turn is a list of model events; an `asyncio.Event` inside a turn blocks
    the stream until the test sets it.
    """

    def __init__(self, turns: list[list[Any]], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._turns = turns
        self.sent: list[list[ModelPart]] = []

    async def send_message_stream(
        self, parts: list[ModelPart], token: CancellationToken
    ) -> AsyncIterator[ModelEvent]:
        self.add_history(ModelContent(role="user", parts=parts))
        self.sent.append(parts)
        turn = self._turns.pop(0) if self._turns else []
        for item in turn:
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            await asyncio.sleep(0)
            yield item
        yield FinishedEvent()


class ScriptedModel:
    def __init__(self, *turns: list[Any]) -> None:
        self.turns = [list(turn) for turn in turns]
        self.sessions: list[ScriptedSession] = []

    def start_session(
        self,
        *,
        task_id: str,
        agent_settings: AgentSettings,
        tools: list[dict[str, Any]],
    ) -> ScriptedSession:
        session = ScriptedSession(
            self.turns, task_id=task_id, agent_settings=agent_settings, tools=tools
        )
        self.sessions.append(session)
        return session


class RecordingSink:
    def __init__(self, on_event: Callable[[Event], None] | None = None) -> None:
        self.events: list[Event] = []
        self._on_event = on_event

    def publish(self, event: Event) -> None:
        self.events.append(event)
        if self._on_event is not None:
            self._on_event(event)

    def status_updates(self) -> list[TaskStatusUpdateEvent]:
        return [event for event in self.events if isinstance(event, TaskStatusUpdateEvent)]

    def state_changes(self) -> list[str]:
        return [
            event.status.state
            for event in self.status_updates()
            if event.agent_event == "state-change"
        ]

    def finals(self) -> list[TaskStatusUpdateEvent]:
        return [event for event in self.status_updates() if event.final]

    def tool_statuses(self) -> list[str]:
        statuses = []
        for event in self.status_updates():
            if event.agent_event not in ("tool-call-update", "tool-call-confirmation"):
                continue
            assert event.status.message is not None
            statuses.append(event.status.message.data_parts()[0]["tool_call"]["status"])
        return statuses


class BlockingTool:
    """Tool body that blocks its worker thread until released."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, payload: ReadFileInput, workspace_root: Path) -> ReadFileOutput:
        self.started.set()
        self.release.wait(timeout=5.0)
        return ReadFileOutput(path=payload.path, content="late")


def user_message(
    text: str | None = None,
    *,
    task_id: str | None = None,
    context_id: str | None = None,
    settings: dict[str, Any] | None = None,
    data: dict[str, Any] | None = None,
) -> Message:
    parts: list[Any] = []
    if text is not None:
        parts.append(TextPart(text=text))
    if data is not None:
        parts.append(DataPart(data=data))
    metadata = {"coder_agent": settings} if settings is not None else {}
    return Message(
        role="user",
        parts=parts,
        task_id=task_id,
        context_id=context_id,
        metadata=metadata,
    )


def list_workspace_files(root: Path) -> list[str]:
    if not root.is_dir():
        return []
    return sorted(path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file())


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.delenv("CODER_AGENT_WORKSPACE_PATH", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture
def settings_payload(workspace: Path) -> dict[str, Any]:
    return {"workspace_path": str(workspace), "auto_execute": True}


@pytest.fixture
def blocking_tool() -> Iterator[BlockingTool]:
    tool = BlockingTool()
    yield tool
    tool.release.set()


@pytest.fixture
def scheduler(blocking_tool: BlockingTool) -> ToolScheduler:
    registry = build_registry()
    registry["slow_read"] = ToolSpec(
        input_model=ReadFileInput,
        output_model=ReadFileOutput,
        fn=blocking_tool,
        description="Read slowly.",
    )
    return ToolScheduler(registry=registry, tool_timeout_s=5.0)


@pytest.fixture
def make_executor(scheduler: ToolScheduler) -> Callable[..., TaskExecutor]:
    def _make(model: Any, store: Any = None) -> TaskExecutor:
        return TaskExecutor(model=model, scheduler=scheduler, store=store)

    return _make

"""Task registry and execution entry point.

Beginner terms used in this file:
- Registry: the in-memory map of task id -> Task owned by one executor.
- Executing set: task ids whose turn-loop is currently running.
- Connection lifecycle: transport hook that tells us when a client went away.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError

from coder_agent.cancellation import CancellationToken
from coder_agent.errors import (
    CoderAgentError,
    MissingPersistedState,
    PersistenceFailure,
    SettingsMissing,
)
from coder_agent.events import Event, EventSink
from coder_agent.llm import AgentModel, ModelContent, ModelPart
from coder_agent.models import (
    AGENT_SETTINGS_METADATA_KEY,
    AgentSettings,
    DataPart,
    Message,
    PersistedState,
    TaskSnapshot,
    TextPart,
    failed_status_event,
    new_id,
)
from coder_agent.storage.base import TaskStore
from coder_agent.tools.scheduler import ToolScheduler

from .task import Task

logger = logging.getLogger(__name__)

CLIENT_ABORT_REASON = "Execution aborted by client disconnect."
USER_CANCEL_REASON = "Task canceled by user request."


class ConnectionLifecycle(Protocol):
    """Close notifications for the connection a request arrived on."""

    def add_close_listener(self, listener: Callable[[], None]) -> None: ...

    def remove_close_listener(self, listener: Callable[[], None]) -> None: ...


@dataclass
class RequestContext:
    user_message: Message
    # Previously persisted snapshot supplied by the transport, if any.
    task: TaskSnapshot | None = None
    connection: ConnectionLifecycle | None = None


class TaskExecutor:
    """Creates, reconstructs and drives tasks; one active turn-loop per task."""

    def __init__(
        self,
        *,
        model: AgentModel,
        scheduler: ToolScheduler,
        store: TaskStore | None = None,
    ) -> None:
        self.model = model
        self.scheduler = scheduler
        self.store = store
        self._tasks: dict[str, Task] = {}
        self._executing: set[str] = set()
        self._active_tokens: dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_all_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def is_executing(self, task_id: str) -> bool:
        return task_id in self._executing

    def evict(self, task_id: str) -> bool:
        """Drop an idle task from memory; callers must have saved it first."""
        if task_id in self._executing:
            return False
        return self._tasks.pop(task_id, None) is not None

    @staticmethod
    def to_snapshot(task: Task) -> TaskSnapshot:
        return TaskSnapshot(
            id=task.id,
            context_id=task.context_id,
            status=task.status,
            history=task.history,
            artifacts=task.artifacts,
            persisted_state=PersistedState(
                agent_settings=task.agent_settings,
                task_state=task.state,
            ),
        )

    # ------------------------------------------------------------------
    # Creation and reconstruction
    # ------------------------------------------------------------------

    async def create_task(
        self,
        task_id: str,
        context_id: str,
        agent_settings: AgentSettings | dict[str, Any] | None,
        event_sink: EventSink | None = None,
    ) -> Task:
        settings = _validate_agent_settings(agent_settings)
        session = self.model.start_session(
            task_id=task_id,
            agent_settings=settings,
            tools=self.scheduler.declarations(),
        )
        task = Task(
            task_id=task_id,
            context_id=context_id,
            agent_settings=settings,
            session=session,
            scheduler=self.scheduler,
            event_sink=event_sink,
        )
        self._tasks[task_id] = task
        logger.info(
            "task_executor event=task_created task_id=%s context_id=%s workspace=%s",
            task_id,
            context_id,
            task.workspace_root,
        )
        if self.store is not None:
            await self.store.save(self.to_snapshot(task))
        return task

    def reconstruct(self, snapshot: TaskSnapshot, event_sink: EventSink | None = None) -> Task:
        if snapshot.persisted_state is None:
            raise MissingPersistedState(f"Task {snapshot.id} snapshot has no persisted state.")
        persisted = snapshot.persisted_state
        session = self.model.start_session(
            task_id=snapshot.id,
            agent_settings=persisted.agent_settings,
            tools=self.scheduler.declarations(),
        )
        task = Task(
            task_id=snapshot.id,
            context_id=snapshot.context_id,
            agent_settings=persisted.agent_settings,
            session=session,
            scheduler=self.scheduler,
            event_sink=event_sink,
        )
        task.status = snapshot.status.model_copy(update={"state": persisted.task_state})
        task.load_history(snapshot.history, snapshot.artifacts)
        for message in snapshot.history:
            content = _to_model_content(message)
            if content is not None:
                session.add_history(content)
        self._tasks[task.id] = task
        logger.info(
            "task_executor event=task_reconstructed task_id=%s context_id=%s state=%s messages=%d",
            task.id,
            task.context_id,
            task.state,
            len(snapshot.history),
        )
        return task

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, context: RequestContext, event_sink: EventSink) -> None:
        message = context.user_message
        snapshot = context.task
        task_id = (snapshot.id if snapshot else None) or message.task_id or new_id()
        context_id = message.context_id or (snapshot.context_id if snapshot else None) or new_id()

        token = CancellationToken()
        release_connection = self._watch_connection(context.connection, token, task_id)
        try:
            task = await self._resolve_task(context, task_id, context_id, event_sink)
            if task is None:
                return
            task.event_sink = event_sink

            if task.is_terminal:
                logger.info(
                    "task_executor event=ignored_terminal task_id=%s state=%s",
                    task.id,
                    task.state,
                )
                return

            if task.id in self._executing:
                logger.info(
                    "task_executor event=absorb_message task_id=%s message_id=%s",
                    task.id,
                    message.message_id,
                )
                task.absorb_user_message(message)
                if task.awaiting_approval:
                    # The running loop stays parked on approval; answer this request now.
                    _publish(event_sink, task.status_event(final=True))
                return

            await self._run_loop(task, message, token)
        finally:
            release_connection()

    async def _run_loop(self, task: Task, message: Message, token: CancellationToken) -> None:
        self._executing.add(task.id)
        self._active_tokens[task.id] = token
        logger.info("task_executor event=loop_start task_id=%s", task.id)
        try:
            await task.run_turn_loop(message, token)
        finally:
            self._executing.discard(task.id)
            self._active_tokens.pop(task.id, None)
            logger.info("task_executor event=loop_end task_id=%s state=%s", task.id, task.state)

    async def _resolve_task(
        self,
        context: RequestContext,
        task_id: str,
        context_id: str,
        event_sink: EventSink,
    ) -> Task | None:
        task = self._tasks.get(task_id)
        if task is not None:
            return task

        if context.task is not None:
            try:
                return self.reconstruct(context.task, event_sink)
            except CoderAgentError as exc:
                logger.error("task_executor event=reconstruct_failed task_id=%s error=%s", task_id, exc)
                _publish(
                    event_sink,
                    failed_status_event(str(exc), task_id=task_id, context_id=context_id),
                )
                return None

        raw_settings = context.user_message.metadata.get(AGENT_SETTINGS_METADATA_KEY)
        try:
            return await self.create_task(task_id, context_id, raw_settings, event_sink)
        except SettingsMissing as exc:
            _publish(
                event_sink, failed_status_event(str(exc), task_id=task_id, context_id=context_id)
            )
            raise
        except PersistenceFailure as exc:
            logger.error("task_executor event=initial_save_failed task_id=%s error=%s", task_id, exc)
            self._tasks.pop(task_id, None)
            _publish(
                event_sink,
                failed_status_event(
                    f"Failed to save new task {task_id}: {exc}",
                    task_id=task_id,
                    context_id=context_id,
                ),
            )
            return None

    def _watch_connection(
        self,
        connection: ConnectionLifecycle | None,
        token: CancellationToken,
        task_id: str,
    ) -> Callable[[], None]:
        """Fire `token` when the client disconnects; returns the release hook."""
        if connection is None:
            return lambda: None

        def on_close() -> None:
            logger.warning("task_executor event=client_disconnected task_id=%s", task_id)
            token.cancel(CLIENT_ABORT_REASON)

        def release() -> None:
            connection.remove_close_listener(on_close)

        connection.add_close_listener(on_close)
        token.add_callback(release)
        return release

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_task(self, task_id: str, event_sink: EventSink) -> None:
        """Cancel a task. Never raises; every outcome is a published event."""
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning("task_executor event=cancel_unknown task_id=%s", task_id)
            _publish(
                event_sink,
                failed_status_event(
                    f"Task {task_id} not found.",
                    task_id=task_id,
                    context_id=new_id(),
                ),
            )
            return

        if task.is_terminal:
            logger.info(
                "task_executor event=cancel_terminal task_id=%s state=%s", task_id, task.state
            )
            _publish(event_sink, task.status_event(final=True))
            return

        try:
            task.event_sink = event_sink
            task.cancel_pending_tools(USER_CANCEL_REASON)
            task.set_state_and_publish("canceled", message_text=USER_CANCEL_REASON, final=True)
            token = self._active_tokens.get(task_id)
            if token is not None:
                token.cancel(USER_CANCEL_REASON)
            logger.info("task_executor event=cancel task_id=%s", task_id)
            if self.store is not None:
                await self.store.save(self.to_snapshot(task))
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_executor event=cancel_failed task_id=%s", task_id)
            _publish(
                event_sink,
                failed_status_event(
                    f"Failed to cancel task {task_id}: {exc}",
                    task_id=task_id,
                    context_id=task.context_id,
                ),
            )


def _publish(event_sink: EventSink, event: Event) -> None:
    try:
        event_sink.publish(event)
    except Exception:  # noqa: BLE001
        logger.exception(
            "task_executor event=publish_failed task_id=%s kind=%s", event.task_id, event.kind
        )


def _validate_agent_settings(raw: AgentSettings | dict[str, Any] | None) -> AgentSettings:
    if raw is None:
        raise SettingsMissing("Agent settings are required to create a new task.")
    if isinstance(raw, AgentSettings):
        return raw
    if not isinstance(raw, dict):
        raise SettingsMissing("Agent settings must be an object.")
    try:
        return AgentSettings.model_validate(raw)
    except ValidationError as exc:
        raise SettingsMissing(f"Invalid agent settings: {exc.errors()[0]['msg']}") from exc


def _to_model_content(message: Message) -> ModelContent | None:
    parts: list[ModelPart] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            parts.append(ModelPart(text=part.text))
        elif isinstance(part, DataPart):
            parts.append(ModelPart(text=json.dumps(part.data)))
    if not parts:
        return None
    return ModelContent(role="model" if message.role == "agent" else "user", parts=parts)

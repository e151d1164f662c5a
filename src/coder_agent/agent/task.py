"""Per-task state machine and turn-loop.

A Task owns its conversation history, lifecycle state, and in-flight tool
calls. One turn-loop alternates between streaming the model and running the
tools it requests until the model stops asking for tools.

Beginner terms used in this file:
- Turn: one model call plus the tool round-trip it triggers.
- Settled: a tool call that reached success, error, or cancelled.
- Sink: the object status/artifact events are published to.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, get_args

from coder_agent.cancellation import CancellationToken
from coder_agent.errors import AlreadyFinal, ExecutionAborted, ModelOrToolError
from coder_agent.events import Event, EventSink
from coder_agent.llm import (
    ContentEvent,
    FinishedEvent,
    ModelContent,
    ModelErrorEvent,
    ModelEvent,
    ModelPart,
    ModelSession,
    ThoughtEvent,
    ToolCallRequestEvent,
    ToolResponse,
)
from coder_agent.models import (
    TERMINAL_STATES,
    AgentEventKind,
    AgentSettings,
    Artifact,
    DataPart,
    Message,
    TaskArtifactUpdateEvent,
    TaskState,
    TaskStatus,
    TaskStatusUpdateEvent,
    ToolCallRecord,
    ToolCallRequest,
    ToolCallStatus,
    ToolConfirmationOutcome,
    agent_message,
)
from coder_agent.tools.scheduler import ToolScheduler
from coder_agent.workspace import resolve_workspace_root

logger = logging.getLogger(__name__)

CONFIRMATION_OUTCOMES: tuple[str, ...] = get_args(ToolConfirmationOutcome)


class Task:
    def __init__(
        self,
        *,
        task_id: str,
        context_id: str,
        agent_settings: AgentSettings,
        session: ModelSession,
        scheduler: ToolScheduler,
        event_sink: EventSink | None = None,
        workspace_root: Path | None = None,
    ) -> None:
        self.id = task_id
        self.context_id = context_id
        self.agent_settings = agent_settings
        self.session = session
        self.scheduler = scheduler
        self.event_sink = event_sink
        self.workspace_root = workspace_root or resolve_workspace_root(agent_settings)
        # Last state-change status; what snapshots persist and cancel re-publishes.
        self.status = TaskStatus(state="submitted")

        self._history: list[Message] = []
        self._artifacts: list[Artifact] = []
        self._pending_tools: dict[str, ToolCallRecord] = {}
        self._tool_runs: dict[str, asyncio.Task[None]] = {}
        self._completed_tools: list[ToolCallRecord] = []
        self._tools_settled = asyncio.Event()
        self._tools_settled.set()
        # User text absorbed while a loop is running, sent with the next model call.
        self._queued_user_parts: list[ModelPart] = []
        self._agent_text: list[str] = []
        self._auto_approved_tools: set[str] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> TaskState:
        return self.status.state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    @property
    def artifacts(self) -> list[Artifact]:
        return list(self._artifacts)

    @property
    def pending_tools(self) -> list[ToolCallRecord]:
        return list(self._pending_tools.values())

    @property
    def awaiting_approval(self) -> bool:
        """True while every pending tool call waits for a user decision."""
        pending = self._pending_tools.values()
        return bool(pending) and all(record.status == "awaiting_approval" for record in pending)

    def load_history(self, messages: list[Message], artifacts: list[Artifact] | None = None) -> None:
        """Restore persisted history (used when reconstructing from a snapshot)."""
        self._history = list(messages)
        self._artifacts = list(artifacts or [])

    # ------------------------------------------------------------------
    # State and publishing
    # ------------------------------------------------------------------

    def set_state_and_publish(
        self,
        state: TaskState,
        *,
        message_text: str | None = None,
        final: bool = False,
        agent_event: AgentEventKind = "state-change",
    ) -> None:
        if self.is_terminal and state != self.state:
            logger.warning(
                "task event=state_change_ignored task_id=%s current=%s requested=%s",
                self.id,
                self.state,
                state,
            )
            return
        message = (
            agent_message(message_text, task_id=self.id, context_id=self.context_id)
            if message_text
            else None
        )
        self.status = TaskStatus(state=state, message=message)
        self._publish(
            TaskStatusUpdateEvent(
                task_id=self.id,
                context_id=self.context_id,
                status=self.status,
                final=final,
                agent_event=agent_event,
            )
        )

    def status_event(self, *, final: bool = True) -> TaskStatusUpdateEvent:
        """The last state-change status as an event, unchanged."""
        return TaskStatusUpdateEvent(
            task_id=self.id,
            context_id=self.context_id,
            status=self.status,
            final=final,
            agent_event="state-change",
        )

    def _status_update(
        self,
        *,
        message: Message | None = None,
        final: bool = False,
        agent_event: AgentEventKind = "state-change",
        metadata: dict[str, Any] | None = None,
    ) -> TaskStatusUpdateEvent:
        return TaskStatusUpdateEvent(
            task_id=self.id,
            context_id=self.context_id,
            status=TaskStatus(state=self.state, message=message),
            final=final,
            agent_event=agent_event,
            metadata=metadata or {},
        )

    def _publish(self, event: Event) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink.publish(event)
        except Exception:  # noqa: BLE001
            logger.exception(
                "task event=publish_failed task_id=%s kind=%s", self.id, event.kind
            )

    def _ensure_active(self) -> None:
        if self.is_terminal:
            raise AlreadyFinal(f"Task {self.id} is already {self.state}.")

    # ------------------------------------------------------------------
    # User and model input
    # ------------------------------------------------------------------

    def accept_user_message(
        self, message: Message, token: CancellationToken
    ) -> AsyncIterator[ModelEvent]:
        """Record a user message and open a model stream for its text, if any."""
        self._ensure_active()
        self._record_user_message(message)
        self._apply_tool_confirmations(message)

        text = message.text()
        if text:
            self._queued_user_parts.append(ModelPart(text=text))
        if not self._queued_user_parts:
            return _empty_stream()
        self.set_state_and_publish("working")
        return self.session.send_message_stream(self._take_queued_parts(), token)

    def absorb_user_message(self, message: Message) -> None:
        """Take a message while another turn-loop is running for this task.

        Tool confirmations are applied immediately; text is queued and reaches
        the model with the running loop's next call.
        """
        self._ensure_active()
        self._record_user_message(message)
        self._apply_tool_confirmations(message)
        text = message.text()
        if text:
            self._queued_user_parts.append(ModelPart(text=text))
        logger.info(
            "task event=message_absorbed task_id=%s message_id=%s queued_parts=%d",
            self.id,
            message.message_id,
            len(self._queued_user_parts),
        )

    def accept_agent_event(self, event: ModelEvent) -> None:
        if isinstance(event, ContentEvent):
            if not event.text:
                return
            self._agent_text.append(event.text)
            self._publish(
                self._status_update(
                    message=agent_message(event.text, task_id=self.id, context_id=self.context_id),
                    agent_event="text-content",
                )
            )
        elif isinstance(event, ThoughtEvent):
            self._publish(
                self._status_update(
                    message=agent_message(
                        task_id=self.id,
                        context_id=self.context_id,
                        data={"subject": event.subject, "description": event.description},
                    ),
                    agent_event="thought",
                )
            )
        elif isinstance(event, ModelErrorEvent):
            raise ModelOrToolError(event.message)
        elif isinstance(event, FinishedEvent):
            logger.debug("task event=model_finished task_id=%s reason=%s", self.id, event.reason)
        else:
            logger.warning("task event=unknown_model_event task_id=%s event=%r", self.id, event)

    def flush_agent_message(self) -> None:
        """Append streamed model text to history as one agent message."""
        if not self._agent_text:
            return
        text = "".join(self._agent_text)
        self._agent_text.clear()
        self._append_history(agent_message(text, task_id=self.id, context_id=self.context_id))

    def _record_user_message(self, message: Message) -> None:
        self._append_history(
            message.model_copy(update={"task_id": self.id, "context_id": self.context_id})
        )

    def _append_history(self, message: Message) -> None:
        if any(existing.message_id == message.message_id for existing in self._history):
            return
        self._history.append(message)

    def _take_queued_parts(self) -> list[ModelPart]:
        parts, self._queued_user_parts = self._queued_user_parts, []
        return parts

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def schedule_tool_calls(self, requests: list[ToolCallRequest]) -> None:
        self._ensure_active()
        if not requests:
            return

        scheduled: list[ToolCallRecord] = []
        for request in requests:
            if request.call_id in self._pending_tools:
                logger.warning(
                    "task event=duplicate_tool_call task_id=%s call_id=%s", self.id, request.call_id
                )
                continue
            record = ToolCallRecord(request=request)
            self._pending_tools[request.call_id] = record
            scheduled.append(record)
            self._publish_tool_update(record)
        if not scheduled:
            return

        self._tools_settled.clear()
        if self.state != "working":
            self.set_state_and_publish("working")
        for record in scheduled:
            if self._needs_confirmation(record.request.name):
                record.status = "awaiting_approval"
                self._publish_tool_update(record, agent_event="tool-call-confirmation")
            else:
                self._launch(record)
        self._notify_if_awaiting_approval()

    def handle_tool_confirmation(self, call_id: str, outcome: ToolConfirmationOutcome) -> bool:
        record = self._pending_tools.get(call_id)
        if record is None or record.status != "awaiting_approval":
            logger.warning(
                "task event=confirmation_ignored task_id=%s call_id=%s reason=not_awaiting",
                self.id,
                call_id,
            )
            return False
        if outcome not in CONFIRMATION_OUTCOMES:
            logger.warning(
                "task event=confirmation_ignored task_id=%s call_id=%s outcome=%s",
                self.id,
                call_id,
                outcome,
            )
            return False

        if outcome == "cancel":
            self._settle(record, "cancelled", error="Tool call cancelled by user.")
            self._notify_if_awaiting_approval()
            return True
        if outcome == "proceed_always":
            self._auto_approved_tools.add(record.request.name)
        if self.state == "input-required":
            self.set_state_and_publish("working")
        self._launch(record)
        return True

    async def wait_for_pending_tools(self, token: CancellationToken) -> None:
        await token.guard(self._tools_settled.wait())

    def get_and_clear_completed_tools(self) -> list[ToolCallRecord]:
        completed, self._completed_tools = self._completed_tools, []
        return completed

    def cancel_pending_tools(self, reason: str) -> None:
        for record in list(self._pending_tools.values()):
            run = self._tool_runs.pop(record.call_id, None)
            if run is not None:
                run.cancel()
            self._settle(record, "cancelled", error=reason)

    def add_tool_responses_to_history(self, completed: list[ToolCallRecord]) -> None:
        """Record settled calls without asking the model for another turn."""
        if not completed:
            return
        self._record_tool_results(completed)
        self.session.add_history(
            ModelContent(role="user", parts=[_function_response(record) for record in completed])
        )

    def send_completed_tools_to_model(
        self, completed: list[ToolCallRecord], token: CancellationToken
    ) -> AsyncIterator[ModelEvent]:
        self._ensure_active()
        self._record_tool_results(completed)
        parts = [_function_response(record) for record in completed]
        parts.extend(self._take_queued_parts())
        return self.session.send_message_stream(parts, token)

    def _apply_tool_confirmations(self, message: Message) -> None:
        for data in message.data_parts():
            call_id = data.get("call_id")
            outcome = data.get("outcome")
            if isinstance(call_id, str) and isinstance(outcome, str):
                self.handle_tool_confirmation(call_id, outcome)

    def _needs_confirmation(self, tool_name: str) -> bool:
        if self.agent_settings.auto_execute or tool_name in self._auto_approved_tools:
            return False
        return self.scheduler.requires_confirmation(tool_name)

    def _launch(self, record: ToolCallRecord) -> None:
        record.status = "executing"
        self._publish_tool_update(record)
        self._tool_runs[record.call_id] = asyncio.create_task(
            self._run_tool(record), name=f"tool-{record.call_id}"
        )

    async def _run_tool(self, record: ToolCallRecord) -> None:
        try:
            result = await self.scheduler.execute(
                record.request.name,
                record.request.args,
                workspace_root=self.workspace_root,
            )
        except asyncio.CancelledError:
            # cancel_pending_tools already settled the record.
            return
        except Exception as exc:  # noqa: BLE001
            result = {"status": "error", "error": str(exc) or type(exc).__name__}
        self._tool_runs.pop(record.call_id, None)
        if record.settled:
            return

        record.attempts = int(result.get("attempts", 0))
        record.duration_ms = float(result.get("duration_ms", 0.0))
        if result.get("status") == "success":
            self._settle(record, "success", output=result.get("output"))
        else:
            self._settle(record, "error", error=str(result.get("error", "unknown error")))
        self._notify_if_awaiting_approval()

    def _settle(
        self,
        record: ToolCallRecord,
        status: ToolCallStatus,
        *,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        record.status = status
        record.output = output
        record.error = error
        self._pending_tools.pop(record.call_id, None)
        self._completed_tools.append(record)
        self._publish_tool_update(record)
        if status == "success":
            self._publish_tool_artifact(record)
        if not self._pending_tools:
            self._tools_settled.set()

    def _notify_if_awaiting_approval(self) -> None:
        if self.awaiting_approval:
            self.set_state_and_publish("input-required", final=True)

    def _publish_tool_update(
        self, record: ToolCallRecord, *, agent_event: AgentEventKind = "tool-call-update"
    ) -> None:
        message = agent_message(
            task_id=self.id,
            context_id=self.context_id,
            data={"tool_call": record.model_dump(mode="json")},
        )
        self._publish(self._status_update(message=message, agent_event=agent_event))

    def _publish_tool_artifact(self, record: ToolCallRecord) -> None:
        artifact = Artifact(
            name=f"{record.request.name}-{record.call_id}",
            parts=[DataPart(data=record.output or {})],
        )
        self._artifacts.append(artifact)
        self._publish(
            TaskArtifactUpdateEvent(task_id=self.id, context_id=self.context_id, artifact=artifact)
        )

    def _record_tool_results(self, completed: list[ToolCallRecord]) -> None:
        self._append_history(
            agent_message(
                task_id=self.id,
                context_id=self.context_id,
                data={"tool_results": [record.model_dump(mode="json") for record in completed]},
            )
        )

    # ------------------------------------------------------------------
    # Turn-loop
    # ------------------------------------------------------------------

    async def run_turn_loop(self, user_message: Message, token: CancellationToken) -> None:
        """Drive the model/tool loop for one user message.

        Never raises for loop failures: aborts end in `input-required`, other
        errors in `failed`, each with one final status event.
        """
        # Requests streamed by the model but not yet handed to the scheduler.
        tool_requests: list[ToolCallRequest] = []
        try:
            events = self.accept_user_message(user_message, token)
            while True:
                tool_requests = []
                async for event in token.iterate(events):
                    if isinstance(event, ToolCallRequestEvent):
                        tool_requests.append(event.request)
                        continue
                    self.accept_agent_event(event)
                self.flush_agent_message()
                token.raise_if_cancelled()

                if tool_requests:
                    self.schedule_tool_calls(tool_requests)
                    tool_requests = []
                await self.wait_for_pending_tools(token)
                token.raise_if_cancelled()

                completed = self.get_and_clear_completed_tools()
                if completed:
                    if all(record.status == "cancelled" for record in completed):
                        # Most likely the user declined an approval; wait for input.
                        self.add_tool_responses_to_history(completed)
                        break
                    events = self.send_completed_tools_to_model(completed, token)
                    continue
                if self._queued_user_parts:
                    self.set_state_and_publish("working")
                    events = self.session.send_message_stream(self._take_queued_parts(), token)
                    continue
                break

            self.set_state_and_publish("input-required", final=True)
        except AlreadyFinal as exc:
            logger.info("task event=loop_stopped task_id=%s reason=%s", self.id, exc)
            self._discard_pending_tools(str(exc), tool_requests)
        except ExecutionAborted:
            logger.warning("task event=loop_aborted task_id=%s reason=%s", self.id, token.reason)
            self.flush_agent_message()
            self._discard_pending_tools(token.reason, tool_requests)
            if self.state not in ("canceled", "failed"):
                self.set_state_and_publish("input-required", message_text=token.reason, final=True)
        except asyncio.CancelledError:
            self._discard_pending_tools("Execution cancelled.", tool_requests)
            raise
        except Exception as exc:  # noqa: BLE001
            error_message = str(exc) or "Agent execution error"
            logger.exception("task event=loop_failed task_id=%s error=%s", self.id, error_message)
            self.flush_agent_message()
            self._discard_pending_tools(error_message, tool_requests)
            if self.state != "failed":
                self.set_state_and_publish("failed", message_text=error_message, final=True)

    def _discard_pending_tools(
        self, reason: str, unscheduled: list[ToolCallRequest] | None = None
    ) -> None:
        """Cancel in-flight calls and record every unreported result.

        Requests the model made that never reached the scheduler are recorded as
        cancelled too, so every tool call in the session history has a response.
        """
        self.cancel_pending_tools(reason)
        leftovers = self.get_and_clear_completed_tools()
        leftovers.extend(
            ToolCallRecord(request=request, status="cancelled", error=reason)
            for request in unscheduled or []
        )
        if leftovers:
            self.add_tool_responses_to_history(leftovers)


def _function_response(record: ToolCallRecord) -> ModelPart:
    response: dict[str, Any] = {"status": record.status}
    if record.output is not None:
        response["output"] = record.output
    if record.error is not None:
        response["error"] = record.error
    return ModelPart(
        function_response=ToolResponse(
            call_id=record.call_id, name=record.request.name, response=response
        )
    )


async def _empty_stream() -> AsyncIterator[ModelEvent]:
    return
    yield  # pragma: no cover

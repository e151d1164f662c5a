"""Pydantic models shared across the executor, task loop, storage, and API.

Beginner terms used in this file:
- Part: one piece of a message (plain text, or a structured data payload).
- Snapshot: the typed shape a task is persisted in and rebuilt from.
- Discriminator: the `kind` field pydantic uses to pick the right Part model.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

# Task lifecycle states. `input-required` is re-enterable; the last three are terminal.
TaskState = Literal["submitted", "working", "input-required", "completed", "canceled", "failed"]
TERMINAL_STATES: frozenset[str] = frozenset({"completed", "canceled", "failed"})

Role = Literal["user", "agent"]

# Kinds of status updates published by a task.
AgentEventKind = Literal[
    "state-change",
    "text-content",
    "thought",
    "tool-call-update",
    "tool-call-confirmation",
]

ToolCallStatus = Literal["pending", "awaiting_approval", "executing", "success", "error", "cancelled"]
SETTLED_TOOL_STATUSES: frozenset[str] = frozenset({"success", "error", "cancelled"})

ToolConfirmationOutcome = Literal["proceed_once", "proceed_always", "cancel"]

# Metadata key carrying AgentSettings on the first message of a new task.
AGENT_SETTINGS_METADATA_KEY = "coder_agent"


def new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class DataPart(BaseModel):
    kind: Literal["data"] = "data"
    data: dict[str, Any] = Field(default_factory=dict)


Part = Annotated[TextPart | DataPart, Field(discriminator="kind")]


class Message(BaseModel):
    """One conversation message, from the user or produced by the agent."""

    kind: Literal["message"] = "message"
    message_id: str = Field(default_factory=new_id)
    role: Role
    parts: list[Part] = Field(default_factory=list)
    task_id: str | None = None
    context_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def text(self) -> str:
        """Concatenate text parts; data parts are ignored."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def data_parts(self) -> list[dict[str, Any]]:
        return [part.data for part in self.parts if isinstance(part, DataPart)]


class AgentSettings(BaseModel):
    """Configuration captured when a task is created; needed to rehydrate it."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["agent-settings"] = "agent-settings"
    workspace_path: str = Field(min_length=1)
    # Skip tool confirmation and run every requested tool immediately.
    auto_execute: bool = False
    model: str | None = None


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the agent model."""

    call_id: str = Field(default_factory=new_id)
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolCallRecord(BaseModel):
    """Scheduler-side bookkeeping for one requested tool call."""

    request: ToolCallRequest
    status: ToolCallStatus = "pending"
    output: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def settled(self) -> bool:
        return self.status in SETTLED_TOOL_STATUSES


class TaskStatus(BaseModel):
    state: TaskState
    message: Message | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class Artifact(BaseModel):
    artifact_id: str = Field(default_factory=new_id)
    name: str
    parts: list[Part] = Field(default_factory=list)


class TaskStatusUpdateEvent(BaseModel):
    kind: Literal["status-update"] = "status-update"
    task_id: str
    context_id: str
    status: TaskStatus
    # True on the last event of one execution burst.
    final: bool = False
    agent_event: AgentEventKind | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskArtifactUpdateEvent(BaseModel):
    kind: Literal["artifact-update"] = "artifact-update"
    task_id: str
    context_id: str
    artifact: Artifact
    append: bool = False
    last_chunk: bool = True


class PersistedState(BaseModel):
    """Internal state block a snapshot must carry to be reconstructable."""

    agent_settings: AgentSettings
    task_state: TaskState


class TaskSnapshot(BaseModel):
    """Durable representation of one task."""

    kind: Literal["task"] = "task"
    id: str
    context_id: str
    status: TaskStatus
    history: list[Message] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    persisted_state: PersistedState | None = None


class SendMessageRequest(BaseModel):
    """Request body for POST /messages."""

    message: Message


def agent_message(
    text: str | None = None,
    *,
    task_id: str,
    context_id: str,
    data: dict[str, Any] | None = None,
) -> Message:
    """Build an agent-authored message with an optional text and data part."""
    parts: list[TextPart | DataPart] = []
    if text:
        parts.append(TextPart(text=text))
    if data is not None:
        parts.append(DataPart(data=data))
    return Message(role="agent", parts=parts, task_id=task_id, context_id=context_id)


def failed_status_event(
    text: str,
    *,
    task_id: str,
    context_id: str,
) -> TaskStatusUpdateEvent:
    """Terminal `failed` update used wherever an error must reach the client."""
    return TaskStatusUpdateEvent(
        task_id=task_id,
        context_id=context_id,
        status=TaskStatus(
            state="failed",
            message=agent_message(text, task_id=task_id, context_id=context_id),
        ),
        final=True,
        agent_event="state-change",
    )

"""Error taxonomy for the task engine.

Errors raised inside a turn-loop are converted to status events by the task;
store errors propagate to whoever called the store.
"""

from __future__ import annotations


class CoderAgentError(Exception):
    """Base class for engine errors."""


class SettingsMissing(CoderAgentError):
    """First message of a new task carried no (valid) agent settings."""


class TaskNotFound(CoderAgentError):
    """Lookup or cancellation for an unknown task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found.")
        self.task_id = task_id


class AlreadyFinal(CoderAgentError):
    """Operation attempted on a task that already reached a terminal state."""


class ExecutionAborted(CoderAgentError):
    """The execution's cancellation token fired."""


class ModelOrToolError(CoderAgentError):
    """Failure reported by the agent model or the tool scheduler."""


class InconsistentState(CoderAgentError):
    """Store index entry exists without a matching snapshot."""


class PersistenceFailure(CoderAgentError):
    """I/O error while saving or loading a task."""


class MissingPersistedState(CoderAgentError):
    """Snapshot lacks the internal persisted-state block."""

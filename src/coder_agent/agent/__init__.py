from .executor import ConnectionLifecycle, RequestContext, TaskExecutor
from .task import Task

__all__ = ["ConnectionLifecycle", "RequestContext", "Task", "TaskExecutor"]

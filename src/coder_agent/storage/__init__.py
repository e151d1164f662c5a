"""Durable task stores."""

from coder_agent.storage.base import TaskStore
from coder_agent.storage.memory import InMemoryTaskStore
from coder_agent.storage.noop import NoopTaskStore
from coder_agent.storage.postgres import PostgresTaskStore

__all__ = [
    "InMemoryTaskStore",
    "NoopTaskStore",
    "PostgresTaskStore",
    "TaskStore",
]

"""Store that never writes, for read-only and dry-run modes."""

from __future__ import annotations

import logging

from coder_agent.models import Message, TaskSnapshot
from coder_agent.storage.base import TaskStore

logger = logging.getLogger(__name__)


class NoopTaskStore:
    """Ignore saves; delegate loads to a real store."""

    def __init__(self, delegate: TaskStore) -> None:
        self.delegate = delegate

    async def save(self, snapshot: TaskSnapshot) -> None:
        logger.debug("task_store event=save_skipped backend=noop task_id=%s", snapshot.id)

    async def load(self, task_id: str) -> TaskSnapshot | None:
        return await self.delegate.load(task_id)

    async def get_context_history(self, context_id: str) -> list[Message]:
        return await self.delegate.get_context_history(context_id)

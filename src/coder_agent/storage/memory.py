"""In-memory task store for local runs and unit tests."""

from __future__ import annotations

import logging

from coder_agent.errors import InconsistentState
from coder_agent.models import Message, TaskSnapshot
from coder_agent.storage.base import (
    read_workspace_archive,
    require_context_id,
    restore_workspace_archive,
    unseen_messages,
)

logger = logging.getLogger(__name__)


class InMemoryTaskStore:
    """Keeps snapshots as JSON so a load never shares objects with the saver."""

    def __init__(self) -> None:
        self._index: dict[str, str] = {}
        self._snapshots: dict[tuple[str, str], str] = {}
        self._archives: dict[tuple[str, str], bytes] = {}
        self._context_logs: dict[str, list[str]] = {}
        self._context_message_ids: dict[str, set[str]] = {}

    async def save(self, snapshot: TaskSnapshot) -> None:
        context_id = require_context_id(snapshot)
        key = (context_id, snapshot.id)
        self._snapshots[key] = snapshot.model_dump_json()

        archive = await read_workspace_archive(snapshot)
        if archive is not None:
            self._archives[key] = archive

        # Written after the snapshot so the index never points at nothing.
        self._index[snapshot.id] = context_id

        seen = self._context_message_ids.setdefault(context_id, set())
        fresh = unseen_messages(snapshot.history, seen)
        log = self._context_logs.setdefault(context_id, [])
        for message in fresh:
            log.append(message.model_dump_json())
            seen.add(message.message_id)
        logger.info(
            "task_store event=saved backend=memory task_id=%s context_id=%s state=%s new_messages=%d",
            snapshot.id,
            context_id,
            snapshot.status.state,
            len(fresh),
        )

    async def load(self, task_id: str) -> TaskSnapshot | None:
        context_id = self._index.get(task_id)
        if context_id is None:
            return None
        key = (context_id, task_id)
        raw = self._snapshots.get(key)
        if raw is None:
            raise InconsistentState(
                f"Task {task_id} is indexed under context {context_id} but has no snapshot."
            )
        snapshot = TaskSnapshot.model_validate_json(raw)
        await restore_workspace_archive(snapshot, self._archives.get(key))
        return snapshot

    async def get_context_history(self, context_id: str) -> list[Message]:
        return [Message.model_validate_json(raw) for raw in self._context_logs.get(context_id, [])]

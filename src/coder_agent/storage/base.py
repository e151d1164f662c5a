"""Storage interface for task checkpoints and context message logs."""

from __future__ import annotations

import asyncio
import logging
import tarfile
from pathlib import Path
from typing import Protocol

from coder_agent.errors import PersistenceFailure
from coder_agent.models import Message, TaskSnapshot
from coder_agent.workspace import archive_workspace, resolve_workspace_root, restore_workspace

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    async def save(self, snapshot: TaskSnapshot) -> None: ...

    async def load(self, task_id: str) -> TaskSnapshot | None: ...

    async def get_context_history(self, context_id: str) -> list[Message]: ...


def require_context_id(snapshot: TaskSnapshot) -> str:
    if not snapshot.context_id:
        raise ValueError(f"Task {snapshot.id} has no context id and cannot be saved.")
    return snapshot.context_id


def workspace_root_for(snapshot: TaskSnapshot) -> Path | None:
    if snapshot.persisted_state is None:
        return None
    return resolve_workspace_root(snapshot.persisted_state.agent_settings)


async def read_workspace_archive(snapshot: TaskSnapshot) -> bytes | None:
    root = workspace_root_for(snapshot)
    if root is None:
        return None
    try:
        return await asyncio.to_thread(archive_workspace, root)
    except (OSError, tarfile.TarError) as exc:
        raise PersistenceFailure(f"Failed to archive workspace {root}: {exc}") from exc


async def restore_workspace_archive(snapshot: TaskSnapshot, data: bytes | None) -> None:
    if data is None:
        logger.info(
            "task_store event=archive_missing task_id=%s context_id=%s",
            snapshot.id,
            snapshot.context_id,
        )
        return
    root = workspace_root_for(snapshot)
    if root is None:
        logger.warning("task_store event=archive_skipped task_id=%s reason=no_settings", snapshot.id)
        return
    try:
        names = await asyncio.to_thread(restore_workspace, data, root)
    except (OSError, ValueError, tarfile.TarError) as exc:
        raise PersistenceFailure(f"Failed to restore workspace {root}: {exc}") from exc
    logger.info(
        "task_store event=archive_restored task_id=%s root=%s members=%d",
        snapshot.id,
        root,
        len(names),
    )


def unseen_messages(history: list[Message], seen_ids: set[str]) -> list[Message]:
    """Messages whose id is not in `seen_ids`, in order, without repeats."""
    fresh: list[Message] = []
    seen = set(seen_ids)
    for message in history:
        if message.message_id in seen:
            continue
        seen.add(message.message_id)
        fresh.append(message)
    return fresh

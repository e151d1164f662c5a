"""PostgreSQL-backed task store with automatic table migration.

Beginner terms:
- Index row: task id -> context id; the entry point of every load.
- BYTEA: PostgreSQL binary column, used for workspace archives.
- Context log: append-only, per-context message list deduplicated by message id.
"""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import UTC, datetime
from typing import Any

from coder_agent.errors import InconsistentState, PersistenceFailure
from coder_agent.models import Message, TaskSnapshot
from coder_agent.storage.base import (
    read_workspace_archive,
    require_context_id,
    restore_workspace_archive,
)


class PostgresTaskStore:
    """Persist task checkpoints in PostgreSQL; one transaction per save."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("CODER_AGENT_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_index (
                    task_id TEXT PRIMARY KEY,
                    context_id TEXT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_snapshots (
                    context_id TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    snapshot_json JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (context_id, task_id)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workspace_archives (
                    context_id TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    archive BYTEA NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (context_id, task_id)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS context_messages (
                    seq BIGSERIAL PRIMARY KEY,
                    context_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    message_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (context_id, message_id)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_context_messages_context
                ON context_messages(context_id, seq)
                """)
            conn.commit()

    async def save(self, snapshot: TaskSnapshot) -> None:
        require_context_id(snapshot)
        archive = await read_workspace_archive(snapshot)
        await asyncio.to_thread(self._save_sync, snapshot, archive)

    async def load(self, task_id: str) -> TaskSnapshot | None:
        loaded = await asyncio.to_thread(self._load_sync, task_id)
        if loaded is None:
            return None
        snapshot, archive = loaded
        await restore_workspace_archive(snapshot, archive)
        return snapshot

    async def get_context_history(self, context_id: str) -> list[Message]:
        rows = await asyncio.to_thread(self._context_rows_sync, context_id)
        return [Message.model_validate(self._parse_json(row["message_json"])) for row in rows]

    def _save_sync(self, snapshot: TaskSnapshot, archive: bytes | None) -> None:
        now = datetime.now(tz=UTC)
        key = (snapshot.context_id, snapshot.id)
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO task_snapshots (context_id, task_id, state, snapshot_json, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (context_id, task_id) DO UPDATE
                    SET state = EXCLUDED.state,
                        snapshot_json = EXCLUDED.snapshot_json,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        *key,
                        snapshot.status.state,
                        self._json_wrapper(snapshot.model_dump(mode="json")),
                        now,
                    ),
                )
                if archive is not None:
                    conn.execute(
                        """
                        INSERT INTO workspace_archives (context_id, task_id, archive, updated_at)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (context_id, task_id) DO UPDATE
                        SET archive = EXCLUDED.archive,
                            updated_at = EXCLUDED.updated_at
                        """,
                        (*key, archive, now),
                    )
                conn.execute(
                    """
                    INSERT INTO task_index (task_id, context_id, updated_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (task_id) DO UPDATE
                    SET context_id = EXCLUDED.context_id,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (snapshot.id, snapshot.context_id, now),
                )
                for message in snapshot.history:
                    conn.execute(
                        """
                        INSERT INTO context_messages (context_id, message_id, message_json, created_at)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (context_id, message_id) DO NOTHING
                        """,
                        (
                            snapshot.context_id,
                            message.message_id,
                            self._json_wrapper(message.model_dump(mode="json")),
                            now,
                        ),
                    )
                conn.commit()
        except self._psycopg.Error as exc:
            raise PersistenceFailure(f"Failed to save task {snapshot.id}: {exc}") from exc

    def _load_sync(self, task_id: str) -> tuple[TaskSnapshot, bytes | None] | None:
        try:
            with self._lock, self._connect() as conn:
                index_row = conn.execute(
                    "SELECT context_id FROM task_index WHERE task_id = %s",
                    (task_id,),
                ).fetchone()
                if index_row is None:
                    return None
                context_id = index_row["context_id"]
                snapshot_row = conn.execute(
                    """
                    SELECT snapshot_json FROM task_snapshots
                    WHERE context_id = %s AND task_id = %s
                    """,
                    (context_id, task_id),
                ).fetchone()
                archive_row = conn.execute(
                    """
                    SELECT archive FROM workspace_archives
                    WHERE context_id = %s AND task_id = %s
                    """,
                    (context_id, task_id),
                ).fetchone()
        except self._psycopg.Error as exc:
            raise PersistenceFailure(f"Failed to load task {task_id}: {exc}") from exc

        if snapshot_row is None:
            raise InconsistentState(
                f"Task {task_id} is indexed under context {context_id} but has no snapshot."
            )
        snapshot = TaskSnapshot.model_validate(self._parse_json(snapshot_row["snapshot_json"]))
        archive = bytes(archive_row["archive"]) if archive_row is not None else None
        return snapshot, archive

    def _context_rows_sync(self, context_id: str) -> list[dict[str, Any]]:
        try:
            with self._lock, self._connect() as conn:
                return conn.execute(
                    """
                    SELECT message_json FROM context_messages
                    WHERE context_id = %s
                    ORDER BY seq ASC
                    """,
                    (context_id,),
                ).fetchall()
        except self._psycopg.Error as exc:
            raise PersistenceFailure(
                f"Failed to read history for context {context_id}: {exc}"
            ) from exc

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> dict[str, Any]:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest
from conftest import list_workspace_files, user_message

from coder_agent.errors import InconsistentState, PersistenceFailure
from coder_agent.models import (
    AgentSettings,
    PersistedState,
    TaskSnapshot,
    TaskStatus,
    agent_message,
)
from coder_agent.storage.memory import InMemoryTaskStore
from coder_agent.storage.noop import NoopTaskStore
from coder_agent.storage.postgres import PostgresTaskStore
from coder_agent.workspace import archive_workspace, restore_workspace


def _snapshot(workspace: Path, *, task_id: str = "T1", context_id: str = "C1") -> TaskSnapshot:
    return TaskSnapshot(
        id=task_id,
        context_id=context_id,
        status=TaskStatus(state="input-required"),
        history=[
            user_message("hello", task_id=task_id, context_id=context_id),
            agent_message("Echo: hello", task_id=task_id, context_id=context_id),
        ],
        persisted_state=PersistedState(
            agent_settings=AgentSettings(workspace_path=str(workspace)),
            task_state="input-required",
        ),
    )


@pytest.mark.asyncio
async def test_save_then_load_round_trips_state_history_and_workspace(workspace: Path) -> None:
    (workspace / "src").mkdir()
    (workspace / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (workspace / "README.md").write_text("# demo\n", encoding="utf-8")
    store = InMemoryTaskStore()
    snapshot = _snapshot(workspace)

    await store.save(snapshot)
    (workspace / "src" / "app.py").unlink()
    (workspace / "README.md").unlink()
    loaded = await store.load("T1")

    assert loaded is not None
    assert loaded.status.state == snapshot.status.state
    assert loaded.persisted_state == snapshot.persisted_state
    assert loaded.history == snapshot.history
    assert list_workspace_files(workspace) == ["README.md", "src/app.py"]
    assert (workspace / "src" / "app.py").read_text(encoding="utf-8") == "print('hi')\n"


@pytest.mark.asyncio
async def test_load_unknown_task_returns_none() -> None:
    assert await InMemoryTaskStore().load("nope") is None


@pytest.mark.asyncio
async def test_load_with_index_but_no_snapshot_is_inconsistent(workspace: Path) -> None:
    store = InMemoryTaskStore()
    await store.save(_snapshot(workspace))
    store._snapshots.clear()

    with pytest.raises(InconsistentState):
        await store.load("T1")


@pytest.mark.asyncio
async def test_repeated_saves_do_not_duplicate_context_messages(workspace: Path) -> None:
    store = InMemoryTaskStore()
    snapshot = _snapshot(workspace)

    await store.save(snapshot)
    await store.save(snapshot)
    follow_up = snapshot.model_copy(
        update={"history": [*snapshot.history, user_message("more", task_id="T1", context_id="C1")]}
    )
    await store.save(follow_up)

    history = await store.get_context_history("C1")
    assert [message.message_id for message in history] == [
        message.message_id for message in follow_up.history
    ]
    assert await store.get_context_history("unknown") == []


@pytest.mark.asyncio
async def test_context_log_spans_tasks(workspace: Path) -> None:
    store = InMemoryTaskStore()
    await store.save(_snapshot(workspace, task_id="T1"))
    await store.save(_snapshot(workspace, task_id="T2"))

    history = await store.get_context_history("C1")
    assert [message.task_id for message in history] == ["T1", "T1", "T2", "T2"]


@pytest.mark.asyncio
async def test_save_requires_context_id(workspace: Path) -> None:
    with pytest.raises(ValueError):
        await InMemoryTaskStore().save(_snapshot(workspace, context_id=""))


@pytest.mark.asyncio
async def test_empty_workspace_is_not_archived(workspace: Path) -> None:
    store = InMemoryTaskStore()
    await store.save(_snapshot(workspace))

    assert store._archives == {}
    assert await store.load("T1") is not None


@pytest.mark.asyncio
async def test_noop_store_ignores_saves_but_delegates_loads(workspace: Path) -> None:
    delegate = InMemoryTaskStore()
    await delegate.save(_snapshot(workspace, task_id="T1"))
    store = NoopTaskStore(delegate)

    await store.save(_snapshot(workspace, task_id="T2"))

    assert await store.load("T2") is None
    assert (await store.load("T1")).id == "T1"
    assert len(await store.get_context_history("C1")) == 2


@pytest.mark.asyncio
async def test_corrupt_archive_raises_persistence_failure(workspace: Path) -> None:
    store = InMemoryTaskStore()
    (workspace / "a.txt").write_text("a", encoding="utf-8")
    await store.save(_snapshot(workspace))
    store._archives[("C1", "T1")] = b"not a tarball"

    with pytest.raises(PersistenceFailure):
        await store.load("T1")


def test_archive_round_trip_preserves_file_set(workspace: Path, tmp_path: Path) -> None:
    (workspace / "nested" / "deep").mkdir(parents=True)
    (workspace / "nested" / "deep" / "x.txt").write_text("x", encoding="utf-8")
    (workspace / "y.txt").write_text("y", encoding="utf-8")

    data = archive_workspace(workspace)
    target = tmp_path / "restored"
    restore_workspace(data, target)

    assert list_workspace_files(target) == list_workspace_files(workspace)


def test_archive_of_missing_directory_is_none(tmp_path: Path) -> None:
    assert archive_workspace(tmp_path / "absent") is None


def test_restore_rejects_members_outside_workspace(tmp_path: Path) -> None:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        payload = b"owned"
        info = tarfile.TarInfo(name="../escape.txt")
        info.size = len(payload)
        archive.addfile(info, io.BytesIO(payload))

    with pytest.raises(ValueError):
        restore_workspace(buffer.getvalue(), tmp_path / "target")
    assert not (tmp_path / "escape.txt").exists()


def test_postgres_store_requires_database_url() -> None:
    with pytest.raises(ValueError):
        PostgresTaskStore("")

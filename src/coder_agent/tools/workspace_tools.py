"""Built-in tools operating inside a task workspace.

Every path argument is resolved relative to the workspace root and must stay
inside it.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path

from coder_agent.tools.schemas import (
    ListDirectoryInput,
    ListDirectoryOutput,
    ReadFileInput,
    ReadFileOutput,
    ReplaceInFileInput,
    ReplaceInFileOutput,
    RunShellCommandInput,
    RunShellCommandOutput,
    WriteFileInput,
    WriteFileOutput,
)

_MAX_COMMAND_OUTPUT = 20_000


def resolve_in_workspace(workspace_root: Path, raw_path: str) -> Path:
    root = workspace_root.resolve()
    candidate = (root / raw_path).resolve()
    if candidate != root and root not in candidate.parents:
        raise ValueError(f"Path is outside the workspace: {raw_path}")
    return candidate


def list_directory(payload: ListDirectoryInput, workspace_root: Path) -> ListDirectoryOutput:
    directory = resolve_in_workspace(workspace_root, payload.path)
    if not directory.is_dir():
        raise ValueError(f"Not a directory: {payload.path}")
    entries = [
        f"{entry.name}/" if entry.is_dir() else entry.name
        for entry in sorted(directory.iterdir(), key=lambda item: item.name)
    ]
    return ListDirectoryOutput(entries=entries)


def read_file(payload: ReadFileInput, workspace_root: Path) -> ReadFileOutput:
    target = resolve_in_workspace(workspace_root, payload.path)
    if not target.is_file():
        raise ValueError(f"File not found: {payload.path}")
    raw = target.read_bytes()
    truncated = len(raw) > payload.max_bytes
    content = raw[: payload.max_bytes].decode("utf-8", errors="replace")
    return ReadFileOutput(path=payload.path, content=content, truncated=truncated)


def write_file(payload: WriteFileInput, workspace_root: Path) -> WriteFileOutput:
    target = resolve_in_workspace(workspace_root, payload.path)
    target.parent.mkdir(parents=True, exist_ok=True)
    encoded = payload.content.encode("utf-8")
    target.write_bytes(encoded)
    return WriteFileOutput(path=payload.path, bytes_written=len(encoded))


def replace_in_file(payload: ReplaceInFileInput, workspace_root: Path) -> ReplaceInFileOutput:
    target = resolve_in_workspace(workspace_root, payload.path)
    if not target.is_file():
        raise ValueError(f"File not found: {payload.path}")
    current = target.read_text(encoding="utf-8")
    occurrences = current.count(payload.old_text)
    if occurrences != payload.expected_replacements:
        raise ValueError(
            f"Expected {payload.expected_replacements} occurrence(s) of old_text "
            f"in {payload.path}, found {occurrences}"
        )
    target.write_text(current.replace(payload.old_text, payload.new_text), encoding="utf-8")
    return ReplaceInFileOutput(path=payload.path, replacements=occurrences)


async def run_shell_command(
    payload: RunShellCommandInput, workspace_root: Path
) -> RunShellCommandOutput:
    """Run `payload.command` through the shell with the workspace as cwd.

    The command gets its own process group, which is killed when the call
    times out or is cancelled.
    """
    process = await asyncio.create_subprocess_shell(
        payload.command,
        cwd=workspace_root,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=payload.timeout_s)
    except TimeoutError as exc:
        await _kill_process_group(process)
        raise RuntimeError(f"Command timed out after {payload.timeout_s:g}s") from exc
    except asyncio.CancelledError:
        await _kill_process_group(process)
        raise
    return RunShellCommandOutput(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace")[-_MAX_COMMAND_OUTPUT:],
        stderr=stderr.decode("utf-8", errors="replace")[-_MAX_COMMAND_OUTPUT:],
    )


async def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    await process.wait()

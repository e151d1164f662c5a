"""Tool registry for the scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from coder_agent.tools import workspace_tools
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


@dataclass(frozen=True)
class ToolSpec:
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    fn: Callable[[Any, Path], BaseModel | Awaitable[BaseModel]]
    description: str = ""
    # Mutating tools wait for user approval unless the task auto-executes.
    requires_confirmation: bool = False


def build_registry() -> dict[str, ToolSpec]:
    return {
        "list_directory": ToolSpec(
            input_model=ListDirectoryInput,
            output_model=ListDirectoryOutput,
            fn=workspace_tools.list_directory,
            description="List the entries of a workspace directory.",
        ),
        "read_file": ToolSpec(
            input_model=ReadFileInput,
            output_model=ReadFileOutput,
            fn=workspace_tools.read_file,
            description="Read a UTF-8 text file from the workspace.",
        ),
        "write_file": ToolSpec(
            input_model=WriteFileInput,
            output_model=WriteFileOutput,
            fn=workspace_tools.write_file,
            description="Create or overwrite a workspace file.",
            requires_confirmation=True,
        ),
        "replace_in_file": ToolSpec(
            input_model=ReplaceInFileInput,
            output_model=ReplaceInFileOutput,
            fn=workspace_tools.replace_in_file,
            description="Replace an exact text snippet inside a workspace file.",
            requires_confirmation=True,
        ),
        "run_shell_command": ToolSpec(
            input_model=RunShellCommandInput,
            output_model=RunShellCommandOutput,
            fn=workspace_tools.run_shell_command,
            description="Run a shell command with the workspace as working directory.",
            requires_confirmation=True,
        ),
    }


def list_tools() -> list[str]:
    return sorted(build_registry().keys())

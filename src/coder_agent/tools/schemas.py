"""Pydantic input/output schemas for built-in workspace tools."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ListDirectoryInput(StrictModel):
    path: str = "."


class ListDirectoryOutput(StrictModel):
    entries: list[str] = Field(default_factory=list)


class ReadFileInput(StrictModel):
    path: str
    max_bytes: int = Field(default=200_000, ge=1)


class ReadFileOutput(StrictModel):
    path: str
    content: str
    truncated: bool = False


class WriteFileInput(StrictModel):
    path: str
    content: str


class WriteFileOutput(StrictModel):
    path: str
    bytes_written: int


class ReplaceInFileInput(StrictModel):
    path: str
    old_text: str = Field(min_length=1)
    new_text: str
    expected_replacements: int = Field(default=1, ge=1)


class ReplaceInFileOutput(StrictModel):
    path: str
    replacements: int


class RunShellCommandInput(StrictModel):
    command: str = Field(min_length=1)
    timeout_s: float = Field(default=20.0, gt=0.0)


class RunShellCommandOutput(StrictModel):
    exit_code: int
    stdout: str
    stderr: str

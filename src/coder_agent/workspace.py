"""Task workspace helpers: root resolution and tar.gz snapshots.

Beginner terms:
- Workspace root: the directory a task's tools read and write.
- Archive: a gzip-compressed tarball of that directory, stored with the task.
"""

from __future__ import annotations

import io
import logging
import tarfile
from pathlib import Path

from coder_agent.config.settings import get_settings
from coder_agent.models import AgentSettings

logger = logging.getLogger(__name__)


def resolve_workspace_root(agent_settings: AgentSettings, override: str | None = None) -> Path:
    """Pick the task workspace: explicit override, configured override, then settings."""
    configured = override if override is not None else get_settings().workspace_path
    raw_path = configured or agent_settings.workspace_path
    return Path(raw_path).expanduser().resolve()


def archive_workspace(root: Path) -> bytes | None:
    """Return a tar.gz of `root`, or None when it is missing or empty."""
    if not root.is_dir():
        return None
    entries = sorted(root.iterdir())
    if not entries:
        return None

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for entry in entries:
            archive.add(entry, arcname=entry.name)
    logger.debug("workspace event=archived root=%s entries=%d", root, len(entries))
    return buffer.getvalue()


def restore_workspace(data: bytes, root: Path) -> list[str]:
    """Extract an archive produced by `archive_workspace` into `root`.

    Members resolving outside `root` (absolute paths, `..`, links) are rejected.
    Returns the extracted member names.
    """
    root.mkdir(parents=True, exist_ok=True)
    resolved_root = root.resolve()
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
        members = archive.getmembers()
        for member in members:
            target = (resolved_root / member.name).resolve()
            if target != resolved_root and resolved_root not in target.parents:
                raise ValueError(f"Archive member escapes workspace: {member.name}")
            if member.issym() or member.islnk():
                raise ValueError(f"Archive member is a link: {member.name}")
        archive.extractall(resolved_root, members=members, filter="data")
    logger.debug("workspace event=restored root=%s members=%d", root, len(members))
    return [member.name for member in members]


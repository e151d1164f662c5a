"""Tool registry and scheduler exports."""

from coder_agent.tools.registry import ToolSpec, build_registry, list_tools
from coder_agent.tools.scheduler import ToolScheduler

__all__ = [
    "ToolScheduler",
    "ToolSpec",
    "build_registry",
    "list_tools",
]

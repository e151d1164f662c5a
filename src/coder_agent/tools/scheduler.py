"""Schema-enforcing tool scheduler with timeout/retry telemetry."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from pathlib import Path
from typing import Any

from coder_agent.tools.registry import ToolSpec, build_registry

logger = logging.getLogger(__name__)


class ToolScheduler:
    """Execute registered tools with strict validation and retry/timeout controls.

    Coroutine tools run on the event loop and are cancelled outright; plain
    functions run in a worker thread.
    """

    def __init__(
        self,
        *,
        registry: dict[str, ToolSpec] | None = None,
        tool_timeout_s: float = 30.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.registry = registry if registry is not None else build_registry()
        self.tool_timeout_s = tool_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def declarations(self) -> list[dict[str, Any]]:
        """Function declarations handed to the agent model."""
        return [
            {
                "name": name,
                "description": spec.description,
                "parameters": spec.input_model.model_json_schema(),
            }
            for name, spec in sorted(self.registry.items())
        ]

    def requires_confirmation(self, tool_name: str) -> bool:
        spec = self.registry.get(tool_name)
        return bool(spec and spec.requires_confirmation)

    async def execute(
        self, tool_name: str, args: dict[str, Any], *, workspace_root: Path
    ) -> dict[str, Any]:
        started_at = time.perf_counter()
        attempts = 0
        final_error = "unknown error"

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                output = await self._execute_once(tool_name, args, workspace_root)
                return {
                    "tool": tool_name,
                    "status": "success",
                    "output": output,
                    "attempts": attempts,
                    "duration_ms": _duration_ms(started_at),
                }
            except Exception as exc:  # noqa: BLE001
                final_error = str(exc) or type(exc).__name__
                logger.warning(
                    "tool_scheduler event=attempt_failed tool=%s attempt=%d/%d reason=%s",
                    tool_name,
                    attempts,
                    self.max_retries + 1,
                    final_error,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    await asyncio.sleep(self.backoff_s)

        return {
            "tool": tool_name,
            "status": "error",
            "error": final_error,
            "attempts": attempts,
            "duration_ms": _duration_ms(started_at),
        }

    async def _execute_once(
        self, tool_name: str, args: dict[str, Any], workspace_root: Path
    ) -> dict[str, Any]:
        spec = self.registry.get(tool_name)
        if spec is None:
            raise ValueError(f"Unknown tool: {tool_name}")

        payload = spec.input_model.model_validate(args)
        if inspect.iscoroutinefunction(spec.fn):
            work = spec.fn(payload, workspace_root)
        else:
            # A worker thread cannot be interrupted: on timeout or cancel the
            # call is abandoned and the thread finishes in the background.
            work = asyncio.to_thread(spec.fn, payload, workspace_root)
        try:
            raw_output = await asyncio.wait_for(work, timeout=self.tool_timeout_s)
        except TimeoutError as exc:
            raise TimeoutError(
                f"Tool '{tool_name}' timed out after {self.tool_timeout_s:.2f}s"
            ) from exc

        validated_output = spec.output_model.model_validate(raw_output)
        return validated_output.model_dump(mode="json")


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)

"""Per-execution cancellation token.

One token is created for every `execute` call. It is the only channel used to
abort model streaming, tool waiting and the surrounding loop, and once fired
it stays fired.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from coder_agent.errors import ExecutionAborted

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_ABORT_REASON = "Execution aborted."


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason or DEFAULT_ABORT_REASON

    def cancel(self, reason: str | None = None) -> None:
        """Fire the token. Later calls are ignored."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("cancellation callback failed reason=%s", self.reason)

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionAborted(self.reason)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, raising ExecutionAborted as soon as the token fires."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
        if work.done() and not work.cancelled():
            return work.result()
        if not self._event.is_set():
            raise asyncio.CancelledError()
        raise ExecutionAborted(self.reason)

    async def iterate(self, source: AsyncIterator[T]) -> AsyncIterator[T]:
        """Yield from `source`, checking the token at every suspension point."""
        iterator = source.__aiter__()
        try:
            while True:
                self.raise_if_cancelled()
                try:
                    item = await self.guard(iterator.__anext__())
                except StopAsyncIteration:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:  # noqa: BLE001
                    logger.debug("model stream close failed", exc_info=True)

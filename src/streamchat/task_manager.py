"""Lifecycle tracking for background persistence and generation tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named and anonymous asyncio tasks so they can be flushed or cancelled.

    Named tasks are keyed by purpose (``"persist:<conversation id>"``); a name
    is reused once its task finishes. Anonymous tasks remove themselves on
    completion and have their exceptions logged instead of lost.
    """

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}
        self._anonymous: set[asyncio.Task[Any]] = set()

    def add(self, task: asyncio.Task[Any], name: str | None = None) -> None:
        if name is not None:
            self._named[name] = task
            task.add_done_callback(lambda done, key=name: self._forget(key, done))
        else:
            self._anonymous.add(task)
            task.add_done_callback(self._anonymous.discard)
        task.add_done_callback(self._log_exception)

    def _forget(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    def _log_exception(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "task.exception",
                extra={
                    "event": "task.exception",
                    "task": task.get_name(),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._named.get(name)

    def is_running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    def names(self, prefix: str = "") -> list[str]:
        return [name for name in self._named if name.startswith(prefix)]

    async def wait(self, name: str) -> None:
        """Wait for a named task to finish without cancelling it."""
        task = self._named.get(name)
        if task is None or task.done():
            return
        await asyncio.gather(task, return_exceptions=True)

    async def wait_prefix(self, prefix: str) -> None:
        for name in self.names(prefix):
            await self.wait(name)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = [t for t in list(self._named.values()) + list(self._anonymous) if not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._named.clear()
        self._anonymous.clear()

    async def await_all(self) -> None:
        """Wait for tracked tasks, including ones scheduled while waiting."""
        while True:
            pending = [
                t for t in list(self._named.values()) + list(self._anonymous) if not t.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

"""Structured lifecycle manager for asyncio background tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Manage named background tasks such as subscriptions and playback."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}

    def add(self, task: asyncio.Task[Any], name: str) -> None:
        """Register a task under a unique name.

        A prior task with the same name must already be finished or cancelled;
        use ``cancel`` first to hand ownership over.
        """
        previous = self._named.get(name)
        if previous is not None and not previous.done():
            raise RuntimeError(f"Task {name!r} is still running.")
        self._named[name] = task
        task.add_done_callback(self._log_exception)

    def _log_exception(self, task: asyncio.Task[Any]) -> None:
        """Log unhandled exceptions so they are not silently lost."""
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
        """Return the named task or ``None`` if not registered."""
        return self._named.get(name)

    def is_running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    async def cancel(self, name: str) -> None:
        """Cancel a named task and await its completion."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait(self, name: str) -> None:
        """Await a named task without cancelling it."""
        task = self._named.get(name)
        if task is None or task.done():
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        for name in list(self._named):
            await self.cancel(name)

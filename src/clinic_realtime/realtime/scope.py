from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from contextlib import suppress
from typing import Any

from clinic_realtime.utils.log import logger


class ScopeClosed(RuntimeError):
    pass


class LivenessScope:
    """
    Liveness token + task set tied to one subscription/session lifetime.

    Async work started for that lifetime is spawned here. `close()` flips `alive`
    first, then cancels whatever is still running, so a callback resolving after
    teardown can check `alive` and never touch a dead session.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._alive = True
        self._tasks: set[asyncio.Task] = set()

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        if not self._alive:
            coro.close()
            raise ScopeClosed(self.name)
        task = asyncio.get_running_loop().create_task(coro, name=f"{self.name}.{name}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logger.warning(
                "scope_task_failed",
                scope=self.name,
                task=task.get_name(),
                error=f"{type(ex).__name__}: {ex}",
            )

    async def join(self) -> None:
        """Wait for the tasks currently in flight (tests, graceful shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._alive = False
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            with suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

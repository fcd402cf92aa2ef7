from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol, Set

from coldcase.core.logging import get_logger

logger = get_logger(__name__)

TaskFactory = Callable[[], Awaitable[object]]
ErrorSink = Callable[[str, BaseException], None]


class TaskQueue(Protocol):
    def submit(self, label: str, factory: TaskFactory) -> None:
        ...


def log_task_error(label: str, exc: BaseException) -> None:
    logger.error("background task %s failed: %s", label, exc, exc_info=exc)


class AsyncioTaskQueue:
    """Runs submitted work on the current event loop; submitters get no completion signal."""

    def __init__(self, on_error: Optional[ErrorSink] = None) -> None:
        self._on_error = on_error or log_task_error
        # the loop only keeps weak references to tasks
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, label: str, factory: TaskFactory) -> None:
        task = asyncio.get_running_loop().create_task(self._run(label, factory), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, label: str, factory: TaskFactory) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._on_error(label, exc)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

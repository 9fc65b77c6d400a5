"""
Keyed, cancellable delayed tasks.

Used for session reconnects (keyed by session id) and webhook retries (keyed
by delivery id). A key has at most one pending task; entries are removed when
the task finishes or is cancelled.
"""
import asyncio
from typing import Awaitable, Callable

from chatrelay.logging_config import get_logger

logger = get_logger(component="scheduler")


class DelayedTaskScheduler:
    """Runs `factory()` after `delay` seconds unless cancelled first."""

    def __init__(self, name: str = "scheduler"):
        self.name = name
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay: float, factory: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Schedule `factory` under `key`, replacing any task already pending for it."""
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay, factory), name=f"{self.name}:{key}")
        self._tasks[key] = task
        return task

    async def _run(self, key: str, delay: float, factory: Callable[[], Awaitable[None]]) -> None:
        try:
            await asyncio.sleep(delay)
            # the factory may reschedule the same key
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("scheduled_task_failed", scheduler=self.name, key=key, error=str(e), exc_info=True)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        return len(tasks)

    def is_pending(self, key: str) -> bool:
        return key in self._tasks

    @property
    def pending(self) -> list[str]:
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

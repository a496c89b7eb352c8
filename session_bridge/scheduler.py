"""Keyed deferred callbacks with replace-cancels-prior semantics."""

import asyncio
import logging
from typing import Awaitable, Callable, Hashable, Optional, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


class KeyedScheduler:
    """
    At most one pending task per key.

    Scheduling a key that already has a pending task cancels the old one
    before the new one is registered, so a superseded callback can never run.
    """

    def __init__(self):
        self._tasks: dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, delay_seconds: float, callback: Callback) -> asyncio.Task:
        """Run `callback` after `delay_seconds`, replacing any pending task for `key`."""
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay_seconds, callback))
        self._tasks[key] = task
        return task

    async def _run(self, key: Hashable, delay_seconds: float, callback: Callback):
        try:
            await asyncio.sleep(delay_seconds)
        except asyncio.CancelledError:
            return

        # Unregister before firing so the callback may reschedule the same key
        current = asyncio.current_task()
        if self._tasks.get(key) is current:
            del self._tasks[key]

        try:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Scheduled callback for {key!r} failed: {e}")

    def cancel(self, key: Hashable) -> bool:
        """Cancel the pending task for `key`. Returns True if one was pending."""
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def is_pending(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def pending(self, key: Hashable) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def cancel_all(self):
        for key in list(self._tasks.keys()):
            self.cancel(key)

    def __len__(self) -> int:
        return len(self._tasks)

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .keys import QueryKey

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InflightRequests:
    """Shares one outstanding request per key between concurrent callers."""

    def __init__(self) -> None:
        self._pending: dict[QueryKey, asyncio.Task[Any]] = {}

    def pending(self, key: QueryKey) -> bool:
        task = self._pending.get(key)
        return task is not None and not task.done()

    async def run(self, key: QueryKey, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        # A finished task may still be registered until its done callback runs.
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
        else:
            logger.debug("Joining in-flight request for %r", key)
        # A cancelled waiter must not cancel the request other callers share.
        return await asyncio.shield(task)

    def _release(self, key: QueryKey, task: asyncio.Task[Any]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # Mark the exception retrieved; every waiter re-raises it itself.
            task.exception()

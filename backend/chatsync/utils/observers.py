"""
Subscribe/notify helper.

WHAT: Callback fan-out plus async streams of published values
WHY: Several UI surfaces read the same state and must see every fully-applied update
HOW: Synchronous callbacks on publish; bounded per-stream asyncio queues for async readers
"""

import asyncio
from typing import AsyncIterator, Callable, Generic, TypeVar

from ..core.config import settings
from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Subscribers(Generic[T]):
    """Callbacks and async streams notified on every publish."""

    def __init__(self, name: str, max_backlog: int | None = None):
        self.name = name
        self.max_backlog = max_backlog if max_backlog is not None else settings.SSE_MAX_BACKLOG
        self._callbacks: list[Callable[[T], None]] = []
        self._queues: set[asyncio.Queue] = set()

    def __len__(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def publish(self, value: T) -> None:
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"{self.name} subscriber failed: {e}", exc_info=True)
        for queue in list(self._queues):
            if queue.full():
                # Each value is a full snapshot; a slow reader only needs the newest ones.
                queue.get_nowait()
            queue.put_nowait(value)

    async def stream(self, initial: T | None = None) -> AsyncIterator[T]:
        """
        Yield published values until the consumer stops iterating.

        Args:
            initial: Value yielded first, usually the current state
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_backlog)
        self._queues.add(queue)
        try:
            if initial is not None:
                yield initial
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)

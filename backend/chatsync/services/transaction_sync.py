"""
Transaction list synchronizer.

WHAT: Periodically refreshed read model of the user's conversations list
WHY: The list has no push channel; it is kept current by polling
HOW: One cache partition per archived flag, wholesale replacement per tick,
     a staleness threshold shorter than the poll interval for manual refetches
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from ..chat.client import ChatApiClient
from ..chat.types import ChatApiError, SyncError, to_sync_error
from ..core.config import settings
from ..models.transaction import TransactionSummary
from ..utils.logger import get_logger
from ..utils.observers import Subscribers

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransactionListView:
    """Snapshot of one partition."""
    archived: bool
    items: tuple[TransactionSummary, ...]
    loading: bool
    error: SyncError | None
    fetched_at: datetime | None

    def conversation_ids(self) -> list[str]:
        return [item.conversation_id for item in self.items]


@dataclass
class _Partition:
    items: tuple[TransactionSummary, ...] = ()
    loading: bool = False
    error: SyncError | None = None
    fetched_at: float | None = None  # clock() value
    fetched_wall: datetime | None = None
    generation: int = 0
    poll_interval: float = 0.0
    poll_task: asyncio.Task | None = None


class TransactionListSynchronizer:
    """Polling cache of transaction lists, keyed by the archived flag."""

    def __init__(
        self,
        client: ChatApiClient,
        *,
        poll_interval: float | None = None,
        stale_after: float | None = None,
        max_retries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self.poll_interval = poll_interval if poll_interval is not None else settings.TRANSACTIONS_POLL_INTERVAL
        self.stale_after = stale_after if stale_after is not None else settings.TRANSACTIONS_STALE_AFTER
        self.max_retries = max_retries if max_retries is not None else settings.TRANSACTIONS_MAX_RETRIES
        self._clock = clock
        self._partitions: dict[bool, _Partition] = {}
        self._background: set[asyncio.Task] = set()
        self.changes: Subscribers[TransactionListView] = Subscribers("transactions")

        if self.stale_after >= self.poll_interval:
            logger.warning(
                f"TRANSACTIONS_STALE_AFTER ({self.stale_after}s) should be below the poll interval "
                f"({self.poll_interval}s), manual refetches will be served from cache"
            )

    def view(self, archived: bool = False) -> TransactionListView:
        partition = self._partition(archived)
        return TransactionListView(
            archived=archived,
            items=partition.items,
            loading=partition.loading,
            error=partition.error,
            fetched_at=partition.fetched_wall,
        )

    def is_stale(self, archived: bool = False) -> bool:
        partition = self._partition(archived)
        if partition.fetched_at is None:
            return True
        return self._clock() - partition.fetched_at >= self.stale_after

    def is_polling(self, archived: bool = False) -> bool:
        partition = self._partitions.get(archived)
        return partition is not None and partition.poll_task is not None

    async def refresh(self, archived: bool = False, force: bool = False) -> TransactionListView:
        """
        Refetch one partition.

        WHAT: Poll tick or manual refetch
        WHY: Fresh data is served from cache; a superseded response never lands
        HOW: Generation counter per partition; wholesale replacement on success

        Args:
            archived: Which partition to refresh
            force: Ignore the staleness threshold (poll ticks)

        Returns:
            The partition view after the refresh
        """
        partition = self._partition(archived)
        if not force and (partition.loading or not self.is_stale(archived)):
            return self.view(archived)

        partition.generation += 1
        generation = partition.generation
        partition.loading = True
        self._publish(archived)

        try:
            items = await self._client.get_transactions(archived, max_retries=self.max_retries)
        except ChatApiError as e:
            if generation != partition.generation:
                return self.view(archived)
            logger.error(f"Transaction list refresh failed (archived={archived}): {e}")
            partition.loading = False
            partition.error = to_sync_error(e)
            self._publish(archived)
            return self.view(archived)

        if generation != partition.generation:
            logger.debug(f"Discarding stale transaction list (archived={archived})")
            return self.view(archived)

        partition.items = tuple(items)
        partition.fetched_at = self._clock()
        partition.fetched_wall = datetime.now(timezone.utc)
        partition.loading = False
        partition.error = None
        self._publish(archived)
        return self.view(archived)

    def start(self, archived: bool = False, poll_interval: float | None = None) -> None:
        """Begin polling a partition (first tick runs immediately)."""
        partition = self._partition(archived)
        partition.poll_interval = poll_interval if poll_interval is not None else self.poll_interval
        if partition.poll_task is not None:
            return
        partition.poll_task = asyncio.create_task(
            self._poll_loop(archived), name=f"transactions-poll-{'archived' if archived else 'active'}"
        )
        logger.info(f"Polling transactions (archived={archived}) every {partition.poll_interval}s")

    async def stop(self, archived: bool = False) -> None:
        partition = self._partitions.get(archived)
        if partition is None or partition.poll_task is None:
            return
        task, partition.poll_task = partition.poll_task, None
        task.cancel()
        await asyncio.wait([task])

    async def stop_all(self) -> None:
        for archived in list(self._partitions):
            await self.stop(archived)
        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.wait(background)

    def request_refresh(self) -> None:
        """
        Schedule a non-forced refresh of every polled partition.

        Used after local actions (e.g. sending a message) that change list
        fields; the staleness threshold decides whether a fetch happens.
        """
        for archived in list(self._partitions):
            if not self.is_polling(archived):
                continue
            task = asyncio.create_task(self.refresh(archived))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def search(self, query: str) -> list[TransactionSummary]:
        """Uncached search pass-through."""
        return await self._client.search_transactions(query)

    def watch(self, archived: bool = False):
        """Async stream of views for one partition, starting with the current one."""
        async def _filtered():
            async for view in self.changes.stream(initial=self.view(archived)):
                if view.archived == archived:
                    yield view
        return _filtered()

    async def _poll_loop(self, archived: bool) -> None:
        partition = self._partition(archived)
        while True:
            try:
                await self.refresh(archived, force=True)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Transaction poll tick failed (archived={archived}): {e}", exc_info=True)
            await asyncio.sleep(partition.poll_interval)

    def _partition(self, archived: bool) -> _Partition:
        partition = self._partitions.get(archived)
        if partition is None:
            partition = self._partitions[archived] = _Partition(poll_interval=self.poll_interval)
        return partition

    def _publish(self, archived: bool) -> None:
        self.changes.publish(self.view(archived))

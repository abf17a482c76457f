"""
Unread aggregator.

WHAT: Process-wide unread counter per conversation, plus the total
WHY: Badges in independent UI surfaces must agree, whatever transport delivered the event
HOW: Single owner of the counter map, synchronous mutations, explicit precedence between
     optimistic local clears and authoritative receipts/snapshots, subscribe/notify for readers
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from ..chat.auth import AuthSession, is_authenticated
from ..chat.client import ChatApiClient
from ..chat.types import ChatApiError, SyncError, to_sync_error
from ..core.config import settings
from ..models.message import ChatMessage, Envelope, ReadReceipt
from ..utils.logger import get_logger
from ..utils.observers import Subscribers

logger = get_logger(__name__)


class CounterSource(str, Enum):
    """What last set a counter."""
    DELIVERY = "delivery"
    LOCAL_CLEAR = "local_clear"  # optimistic, may be overridden
    RECEIPT = "receipt"  # authoritative
    SNAPSHOT = "snapshot"  # authoritative

    @property
    def authoritative(self) -> bool:
        return self in (CounterSource.RECEIPT, CounterSource.SNAPSHOT)


@dataclass
class _Counter:
    count: int = 0
    source: CounterSource = CounterSource.DELIVERY
    version: int = 0


@dataclass(frozen=True)
class UnreadSnapshot:
    """Immutable view of every counter at one point in time."""
    counts: Mapping[str, int] = field(default_factory=dict)
    total: int = 0

    def count_for(self, conversation_id: str) -> int:
        return self.counts.get(conversation_id, 0)


class UnreadAggregator:
    """
    Single logical owner of the unread counter map.

    All mutations are plain synchronous methods run on the event loop, so a
    reader never sees a half-applied update. Consumers never write the map
    directly; they call the operations below.
    """

    def __init__(
        self,
        auth: AuthSession,
        client: ChatApiClient | None = None,
        *,
        refresh_interval: float | None = None,
        dedup_window: int | None = None,
    ):
        self._auth = auth
        self._client = client
        self.refresh_interval = (
            refresh_interval if refresh_interval is not None else settings.UNREAD_REFRESH_INTERVAL
        )
        self._dedup_window = dedup_window if dedup_window is not None else settings.UNREAD_DEDUP_WINDOW
        self._counters: dict[str, _Counter] = {}
        self._recent: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._refresh_generation = 0
        self._poll_task: asyncio.Task | None = None
        self.loading = False
        self.error: SyncError | None = None
        self.changes: Subscribers[UnreadSnapshot] = Subscribers("unread")

    # ---- reads ----

    def count_for(self, conversation_id: str) -> int:
        counter = self._counters.get(conversation_id)
        return counter.count if counter is not None else 0

    @property
    def total_unread(self) -> int:
        return sum(counter.count for counter in self._counters.values())

    def source_for(self, conversation_id: str) -> CounterSource | None:
        counter = self._counters.get(conversation_id)
        return counter.source if counter is not None else None

    def snapshot(self) -> UnreadSnapshot:
        counts = {cid: counter.count for cid, counter in self._counters.items()}
        return UnreadSnapshot(counts=MappingProxyType(counts), total=sum(counts.values()))

    def subscribe(self, callback):
        """Register a snapshot callback; returns an unsubscribe function."""
        return self.changes.subscribe(callback)

    def watch(self):
        """Async stream of snapshots, starting with the current one."""
        return self.changes.stream(initial=self.snapshot())

    # ---- mutations ----

    def on_message_delivered(
        self,
        conversation_id: str,
        sender_id: str | int,
        message_id: str | None = None,
    ) -> bool:
        """
        Count a delivered message from someone other than the current user.

        Returns:
            True if a counter was incremented
        """
        current_user = self._auth.user_id if self._auth else None
        if current_user is None or str(sender_id) == current_user:
            return False
        if message_id is not None and not self._remember(conversation_id, message_id):
            logger.debug(f"Message {message_id} already counted for {conversation_id}")
            return False

        counter = self._counter(conversation_id)
        counter.count += 1
        counter.source = CounterSource.DELIVERY
        counter.version += 1
        self._publish()
        return True

    def on_read_receipt(self, conversation_id: str, marked_count: int = 0) -> None:
        """
        Authoritative receipt: reset the conversation to zero.

        The marked count is informational only; subtracting it would drift
        when receipts are lost or duplicated.
        """
        counter = self._counter(conversation_id)
        changed = counter.count != 0 or counter.source is not CounterSource.RECEIPT
        counter.count = 0
        counter.source = CounterSource.RECEIPT
        counter.version += 1
        logger.debug(f"Read receipt for {conversation_id} (marked {marked_count})")
        if changed:
            self._publish()

    def clear_locally(self, conversation_id: str) -> int:
        """
        Optimistic reset when the user opens a conversation.

        Returns:
            The counter version written, used to detect later overrides
        """
        counter = self._counter(conversation_id)
        changed = counter.count != 0
        counter.count = 0
        counter.source = CounterSource.LOCAL_CLEAR
        counter.version += 1
        if changed:
            self._publish()
        return counter.version

    def apply_snapshot(self, counts: Mapping[str, int]) -> None:
        """Authoritative per-conversation counts from the chat service."""
        for conversation_id in set(self._counters) | set(counts):
            counter = self._counter(conversation_id)
            counter.count = max(0, int(counts.get(conversation_id, 0)))
            counter.source = CounterSource.SNAPSHOT
            counter.version += 1
        self._publish()

    def handle_envelope(self, envelope: Envelope) -> None:
        """Transport listener."""
        if isinstance(envelope, ReadReceipt):
            self.on_read_receipt(envelope.conversation_id, envelope.marked_count)
        elif isinstance(envelope, ChatMessage):
            self.on_message_delivered(envelope.conversation_id, envelope.sender_id, envelope.id)

    # ---- REST-backed operations ----

    async def mark_read(self, conversation_id: str) -> bool:
        """
        Clear locally, then confirm with the chat service.

        WHAT: The user's "mark read" action
        WHY: Badges update immediately; the service stays the source of truth
        HOW: On failure, restore the old count unless something newer touched the counter

        Returns:
            True if the service confirmed
        """
        previous = self._counters.get(conversation_id)
        previous_count = previous.count if previous is not None else 0
        previous_source = previous.source if previous is not None else CounterSource.DELIVERY
        version = self.clear_locally(conversation_id)

        if self._client is None:
            return False

        try:
            marked = await self._client.mark_read(conversation_id)
        except ChatApiError as e:
            logger.warning(f"Failed to mark {conversation_id} as read: {e}")
            self.error = to_sync_error(e)
            counter = self._counters.get(conversation_id)
            if counter is not None and counter.version == version:
                counter.count = previous_count
                counter.source = previous_source
                counter.version += 1
            self._publish()
            return False

        counter = self._counters.get(conversation_id)
        if counter is not None and counter.version == version:
            counter.source = CounterSource.RECEIPT
        self.error = None
        logger.info(f"Marked {marked} messages as read in {conversation_id}")
        return True

    async def refresh(self) -> bool:
        """
        Pull authoritative counts from the chat service.

        A refresh that resolves after a newer one was issued is discarded.
        Without a session every counter is dropped.
        """
        if self._client is None:
            return False
        if not is_authenticated(self._auth):
            if self._counters:
                self._counters.clear()
                self._publish()
            return False

        self._refresh_generation += 1
        generation = self._refresh_generation
        self.loading = True
        try:
            counts = await self._client.get_unread_counts()
        except ChatApiError as e:
            if generation == self._refresh_generation:
                logger.warning(f"Failed to refresh unread counts: {e}")
                self.loading = False
                self.error = to_sync_error(e)
            return False

        if generation != self._refresh_generation:
            logger.debug("Discarding stale unread counts")
            return False

        self.loading = False
        self.error = None
        self.apply_snapshot(counts)
        return True

    # ---- lifecycle ----

    def start(self) -> None:
        """Application mount: begin periodic refresh."""
        if self._poll_task is not None or self._client is None or self.refresh_interval <= 0:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name="unread-refresh")
        logger.info(f"Unread aggregator started (refresh every {self.refresh_interval}s)")

    async def stop(self) -> None:
        """Application unmount: stop polling and forget every counter."""
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            await asyncio.wait([task])
        self._counters.clear()
        self._recent.clear()
        self._publish()
        logger.info("Unread aggregator stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unread refresh failed: {e}", exc_info=True)
            await asyncio.sleep(self.refresh_interval)

    # ---- internals ----

    def _counter(self, conversation_id: str) -> _Counter:
        counter = self._counters.get(conversation_id)
        if counter is None:
            counter = self._counters[conversation_id] = _Counter()
        return counter

    def _remember(self, conversation_id: str, message_id: str) -> bool:
        key = (conversation_id, message_id)
        if key in self._recent:
            return False
        self._recent[key] = None
        while len(self._recent) > self._dedup_window:
            self._recent.popitem(last=False)
        return True

    def _publish(self) -> None:
        self.changes.publish(self.snapshot())

"""
Conversation store.

WHAT: Ordered, deduplicated message feed for the active conversation
WHY: REST history and push deliveries race; the feed must show each message once, in creation order
HOW: Wholesale history replacement guarded by the active identity, dedup-by-id appends from the transport
"""

from dataclasses import dataclass
from typing import Callable

from ..chat.client import ChatApiClient, OutgoingFile
from ..chat.types import (
    ChatApiError,
    ErrorKind,
    SyncError,
    TransportCondition,
    TransportEvent,
    to_sync_error,
)
from ..models.message import ChatMessage, Envelope, MessageOrigin
from ..utils.logger import get_logger
from ..utils.observers import Subscribers

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConversationView:
    """Snapshot handed to UI consumers."""
    conversation_id: str | None
    messages: tuple[ChatMessage, ...]
    pending: tuple[ChatMessage, ...]
    loading: bool
    error: SyncError | None
    transport_error: SyncError | None


@dataclass(frozen=True)
class SendResult:
    """Outcome of a send; the message itself arrives later via push."""
    accepted: bool
    error: SyncError | None = None
    message_id: str | None = None


class ConversationStore:
    """
    Message feed for one conversation view.

    The store is owned by a single scope and never shared. Every mutating
    method is synchronous apart from the awaited REST calls in load/send,
    and results of those calls are applied only if the store is still on the
    conversation that issued them.
    """

    def __init__(
        self,
        client: ChatApiClient,
        *,
        on_sent: Callable[[str], None] | None = None,
    ):
        self._client = client
        self._on_sent = on_sent
        self.active_id: str | None = None
        self.loading = False
        self.error: SyncError | None = None
        self.transport_error: SyncError | None = None
        self._messages: list[ChatMessage] = []
        self._ids: set[str] = set()
        self._load_seq = 0
        self._loads_in_flight: set[int] = set()
        self._awaiting_echo: dict[str, ChatMessage] = {}
        self.changes: Subscribers[ConversationView] = Subscribers("conversation")

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def pending(self) -> tuple[ChatMessage, ...]:
        return tuple(self._awaiting_echo.values())

    def view(self) -> ConversationView:
        return ConversationView(
            conversation_id=self.active_id,
            messages=self.messages,
            pending=self.pending,
            loading=self.loading,
            error=self.error,
            transport_error=self.transport_error,
        )

    def activate(self, conversation_id: str | None) -> None:
        """Point the store at a conversation, discarding the previous feed."""
        if conversation_id == self.active_id:
            return
        self.active_id = conversation_id
        self._reset()
        self._publish()

    def clear(self) -> None:
        """Teardown: forget the feed and the active identity."""
        self.active_id = None
        self._reset()
        self._publish()

    async def load(self, conversation_id: str | None = None) -> bool:
        """
        Fetch history and replace the feed wholesale.

        WHAT: Initial fill and manual refresh
        WHY: A slow response for a conversation the user already left must not land
        HOW: Compare the active identity when the response resolves, not when it was requested

        Args:
            conversation_id: Conversation to load; defaults to the active one

        Returns:
            True if the fetched history was applied
        """
        conversation_id = conversation_id or self.active_id
        if not conversation_id:
            return False
        self.activate(conversation_id)

        self._load_seq += 1
        token = self._load_seq
        self._loads_in_flight.add(token)
        self.loading = True
        self._publish()
        try:
            history = await self._client.get_messages(conversation_id)
        except ChatApiError as e:
            if self.active_id != conversation_id:
                logger.debug(f"Discarding stale load failure for {conversation_id}")
                return False
            logger.warning(f"Failed to load messages for {conversation_id}: {e}")
            self._finish_load(token)
            self.error = to_sync_error(e)
            self._publish()
            return False

        if self.active_id != conversation_id:
            logger.debug(f"Discarding stale history for {conversation_id} (active: {self.active_id})")
            return False

        self._replace(history)
        self._finish_load(token)
        self.error = None
        self._publish()
        return True

    async def refresh(self) -> bool:
        return await self.load(self.active_id)

    async def send(self, body: str, file: OutgoingFile | None = None) -> SendResult:
        """
        Post a message without touching the feed.

        The sender sees the message only once the push broadcast delivers it,
        so every participant observes the same ordering. Empty bodies are
        rejected before any request is made.
        """
        conversation_id = self.active_id
        text = (body or "").strip()

        if not conversation_id:
            return SendResult(False, SyncError(ErrorKind.VALIDATION, "No conversation selected"))
        if not text and file is None:
            logger.debug(f"Rejected empty message for {conversation_id}")
            return SendResult(False, SyncError(ErrorKind.VALIDATION, "Message body is empty"))

        try:
            ack = await self._client.send_message(conversation_id, text, file)
        except ChatApiError as e:
            error = to_sync_error(e)
            logger.warning(f"Send failed for {conversation_id}: {e}")
            if self.active_id == conversation_id:
                self.error = error
                self._publish()
            return SendResult(False, error)

        if self.active_id == conversation_id:
            self.error = None
            if ack is not None and ack.id not in self._ids:
                self._awaiting_echo[ack.id] = ack.with_origin(MessageOrigin.PENDING)
            self._publish()

        if self._on_sent is not None:
            self._on_sent(conversation_id)
        return SendResult(True, message_id=ack.id if ack is not None else None)

    def append(self, message: ChatMessage) -> bool:
        """
        Insert a delivered message unless its identity is already present.

        Returns:
            True if the feed changed
        """
        if message.conversation_id != self.active_id:
            logger.debug(
                f"Ignoring message {message.id} for {message.conversation_id} (active: {self.active_id})"
            )
            return False

        if message.id in self._ids:
            return self._promote(message)

        self._awaiting_echo.pop(message.id, None)
        self._insert(message)
        self._publish()
        return True

    def handle_envelope(self, envelope: Envelope) -> None:
        """Transport listener; read receipts belong to the unread aggregator."""
        if isinstance(envelope, ChatMessage):
            self.append(envelope)

    def handle_condition(self, event: TransportEvent) -> None:
        """Transport condition listener."""
        if event.conversation_id != self.active_id:
            return
        if event.condition is TransportCondition.OPENED:
            self.transport_error = None
        elif event.condition in (TransportCondition.DISCONNECTED, TransportCondition.ERROR):
            detail = event.detail or "live updates disconnected"
            self.transport_error = SyncError(ErrorKind.TRANSIENT_NETWORK, detail)
        else:
            return
        self._publish()

    def _promote(self, message: ChatMessage) -> bool:
        # only an unconfirmed entry may change, and only its origin tag
        for index, existing in enumerate(self._messages):
            if existing.id == message.id:
                if existing.origin is MessageOrigin.PENDING and message.origin is not MessageOrigin.PENDING:
                    self._messages[index] = existing.with_origin(message.origin)
                    self._publish()
                    return True
                return False
        return False

    def _replace(self, history: list[ChatMessage]) -> None:
        pushed_meanwhile = [m for m in self._messages if m.origin is MessageOrigin.PUSHED]
        self._messages = []
        self._ids = set()
        for message in history:
            if message.conversation_id == self.active_id and message.id not in self._ids:
                self._insert(message)
        for message in pushed_meanwhile:
            if message.id not in self._ids:
                self._insert(message)
        for message_id in list(self._awaiting_echo):
            if message_id in self._ids:
                del self._awaiting_echo[message_id]

    def _insert(self, message: ChatMessage) -> None:
        # after the last message not newer than this one; ties keep arrival order
        index = len(self._messages)
        if message.timestamp is not None:
            while index > 0:
                previous = self._messages[index - 1].timestamp
                if previous is None or previous <= message.timestamp:
                    break
                index -= 1
        self._messages.insert(index, message)
        self._ids.add(message.id)

    def _reset(self) -> None:
        self._messages = []
        self._ids = set()
        self._awaiting_echo = {}
        self._loads_in_flight.clear()
        self.loading = False
        self.error = None
        self.transport_error = None

    def _finish_load(self, token: int) -> None:
        # Overlapping loads of one conversation: loading stays set until the last resolves.
        self._loads_in_flight.discard(token)
        self.loading = bool(self._loads_in_flight)

    def _publish(self) -> None:
        self.changes.publish(self.view())

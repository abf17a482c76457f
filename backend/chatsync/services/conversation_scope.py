"""
Conversation scope.

WHAT: The lifetime of one open conversation view: its store plus its push connection
WHY: Opening, switching and closing a conversation must keep the feed and the socket in step
HOW: Activate the store, open the transport with store + aggregator listeners, then load history
"""

from typing import Callable

from ..chat.client import ChatApiClient, OutgoingFile
from ..chat.transport import PushConnector, TransportManager
from ..chat.types import ConnectionState
from ..utils.logger import get_logger
from .conversation_store import ConversationStore, ConversationView, SendResult
from .unread_aggregator import UnreadAggregator

logger = get_logger(__name__)


class ConversationScope:
    """
    One conversation view and the resources it owns.

    The scope owns its store and its transport manager; the unread
    aggregator is shared and only subscribed to the scope's connection.
    """

    def __init__(
        self,
        client: ChatApiClient,
        connector: PushConnector | None,
        aggregator: UnreadAggregator | None = None,
        *,
        push_enabled: bool | None = None,
        on_sent: Callable[[str], None] | None = None,
    ):
        self.store = ConversationStore(client, on_sent=on_sent)
        self.transport = TransportManager(connector, enabled=push_enabled)
        self._aggregator = aggregator
        self.live = False

    @property
    def conversation_id(self) -> str | None:
        return self.store.active_id

    @property
    def connection_state(self) -> ConnectionState:
        return self.transport.state

    def view(self) -> ConversationView:
        return self.store.view()

    async def open(self, conversation_id: str, live: bool = True) -> ConversationView:
        """
        Show a conversation, replacing whatever the scope showed before.

        Args:
            conversation_id: Conversation to show
            live: Keep a push connection open while the conversation is shown

        Returns:
            The view after the initial history load
        """
        if not conversation_id:
            await self.close()
            return self.view()

        # previous connection must be gone before the feed switches
        await self.transport.deactivate()
        self.store.activate(conversation_id)
        self.live = live

        if self._aggregator is not None:
            self._aggregator.clear_locally(conversation_id)

        if live:
            await self._connect(conversation_id)

        await self.store.load(conversation_id)
        logger.info(f"Opened conversation {conversation_id} (live={live})")
        return self.view()

    async def set_live(self, live: bool) -> None:
        """Toggle the push connection for the conversation currently shown."""
        conversation_id = self.conversation_id
        if conversation_id is None or live == self.live:
            self.live = live
            return
        self.live = live
        if live:
            await self._connect(conversation_id)
        else:
            await self.transport.deactivate()

    async def close(self) -> None:
        """Tear down the connection and forget the feed."""
        conversation_id = self.conversation_id
        await self.transport.deactivate()
        self.store.clear()
        self.live = False
        if conversation_id:
            logger.info(f"Closed conversation {conversation_id}")

    async def send(self, body: str, file: OutgoingFile | None = None) -> SendResult:
        return await self.store.send(body, file)

    async def refresh(self) -> bool:
        return await self.store.refresh()

    async def mark_read(self) -> bool:
        if self._aggregator is None or self.conversation_id is None:
            return False
        return await self._aggregator.mark_read(self.conversation_id)

    async def _connect(self, conversation_id: str) -> None:
        listeners = [self.store.handle_envelope]
        if self._aggregator is not None:
            listeners.append(self._aggregator.handle_envelope)
        await self.transport.activate(
            conversation_id,
            listeners,
            [self.store.handle_condition],
        )

    async def __aenter__(self) -> "ConversationScope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

"""
Chat engine composition root.

WHAT: Wires session, REST client, push connector, stores and synchronizers together
WHY: One place owns the process-wide state and its startup/shutdown order
HOW: ChatEngine instance plus a module-level singleton accessor for the API layer
"""

from ..chat.auth import AuthSession, StaticAuthSession
from ..chat.client import ChatApiClient
from ..chat.transport import AiohttpPushConnector, PushConnector
from ..services.conversation_scope import ConversationScope
from ..services.transaction_sync import TransactionListSynchronizer
from ..services.unread_aggregator import UnreadAggregator
from ..utils.logger import get_logger
from .config import settings

logger = get_logger(__name__)


class ChatEngine:
    """
    Process-wide chat sync engine.

    WHAT: Owns the unread aggregator, the transaction list cache and open conversation scopes
    WHY: UI surfaces share counters and lists but each open conversation has its own feed
    HOW: Scopes keyed by conversation id; a successful send asks the list cache to refetch
    """

    def __init__(
        self,
        auth: AuthSession | None = None,
        client: ChatApiClient | None = None,
        connector: PushConnector | None = None,
        *,
        push_enabled: bool | None = None,
    ):
        self.auth = auth or StaticAuthSession.from_settings()
        self.client = client or ChatApiClient(self.auth)
        self.push_enabled = settings.PUSH_ENABLED if push_enabled is None else push_enabled
        if connector is None and self.push_enabled:
            connector = AiohttpPushConnector(self.auth)
        self.connector = connector

        self.unread = UnreadAggregator(self.auth, self.client)
        self.transactions = TransactionListSynchronizer(self.client)
        self._scopes: dict[str, ConversationScope] = {}
        self.started = False

    @property
    def open_conversations(self) -> list[str]:
        return list(self._scopes)

    async def start(self, poll_archived: bool = False) -> None:
        """Mount: start unread refresh and transaction list polling."""
        if self.started:
            return
        self.started = True
        self.unread.start()
        self.transactions.start(archived=False)
        if poll_archived:
            self.transactions.start(archived=True)
        logger.info("Chat engine started")

    async def shutdown(self) -> None:
        """Unmount: close every scope, stop polling, release HTTP and WebSocket sessions."""
        for conversation_id in list(self._scopes):
            await self.close_conversation(conversation_id)
        await self.transactions.stop_all()
        await self.unread.stop()

        close_connector = getattr(self.connector, "close", None)
        if close_connector is not None:
            await close_connector()
        await self.client.close()
        self.started = False
        logger.info("Chat engine shut down")

    def get_conversation(self, conversation_id: str) -> ConversationScope | None:
        return self._scopes.get(conversation_id)

    async def open_conversation(self, conversation_id: str, live: bool = True) -> ConversationScope:
        """
        Open (or re-open) a conversation scope.

        Re-opening an already open conversation reloads its history and
        applies the requested live flag.
        """
        scope = self._scopes.get(conversation_id)
        if scope is None:
            scope = ConversationScope(
                self.client,
                self.connector,
                self.unread,
                push_enabled=self.push_enabled,
                on_sent=self._on_sent,
            )
            self._scopes[conversation_id] = scope
            await scope.open(conversation_id, live=live)
        else:
            await scope.set_live(live)
            await scope.refresh()
        return scope

    async def close_conversation(self, conversation_id: str) -> bool:
        scope = self._scopes.pop(conversation_id, None)
        if scope is None:
            return False
        await scope.close()
        return True

    async def health(self) -> dict:
        """Chat service reachability plus engine state."""
        chat_status = await self.client.ping()
        return {
            "chat_api": chat_status,
            "push_enabled": self.push_enabled,
            "authenticated": bool(self.auth.access_token),
            "open_conversations": len(self._scopes),
            "started": self.started,
        }

    def _on_sent(self, conversation_id: str) -> None:
        # last_message / last_activity changed for this conversation
        logger.debug(f"Message sent in {conversation_id}, requesting transaction list refresh")
        self.transactions.request_refresh()


# Singleton instance
_engine_instance: ChatEngine | None = None


def get_engine() -> ChatEngine:
    """Get the process-wide engine, creating it from settings on first use."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = ChatEngine()
        logger.info(f"Chat engine initialized for {settings.CHAT_API_BASE_URL}")
    return _engine_instance


def set_engine(engine: ChatEngine | None) -> None:
    """Replace the singleton (tests and embedding applications)."""
    global _engine_instance
    _engine_instance = engine


def reset_engine() -> None:
    """Reset the engine singleton (useful for testing)."""
    global _engine_instance
    _engine_instance = None

"""
Push transport.

WHAT: One live push connection per active conversation, with ordered envelope dispatch
WHY: History comes over REST, everything after that arrives on a per-conversation socket
HOW: Connection state machine + reader task per socket, aiohttp WebSocket connector for production
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable, Protocol

import aiohttp

from .auth import AuthSession
from .codec import decode_envelope
from .types import (
    ConnectionState,
    TransportCondition,
    TransportEvent,
    TransportNotReadyError,
)
from ..core.config import settings
from ..models.message import Envelope, Unrecognized
from ..utils.logger import get_logger

logger = get_logger(__name__)

EnvelopeListener = Callable[[Envelope], None]
ConditionListener = Callable[[TransportEvent], None]


class PushSocket(Protocol):
    """An open bidirectional push channel."""

    def frames(self) -> AsyncIterator[Any]:
        """Yield inbound frames until the remote side closes; raise on transport error."""
        ...

    async def send(self, data: str) -> None:
        ...

    async def close(self) -> None:
        ...


class PushConnector(Protocol):
    """Opens push channels scoped to one conversation."""

    async def connect(self, conversation_id: str) -> PushSocket:
        ...


class AiohttpPushSocket:
    """PushSocket over an aiohttp client WebSocket."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws

    async def frames(self) -> AsyncIterator[Any]:
        async for msg in self._ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(f"WebSocket error: {self._ws.exception()}")

    async def send(self, data: str) -> None:
        await self._ws.send_str(data)

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class AiohttpPushConnector:
    """Connects to the chat service's `/ws/{conversation_id}` endpoint."""

    def __init__(
        self,
        auth: AuthSession | None = None,
        *,
        base_url: str | None = None,
        heartbeat: float | None = None,
    ):
        self.auth = auth
        self.base_url = (base_url or settings.get_ws_base_url()).rstrip("/")
        self.heartbeat = heartbeat if heartbeat is not None else settings.PUSH_HEARTBEAT_INTERVAL
        self._session: aiohttp.ClientSession | None = None

    async def connect(self, conversation_id: str) -> AiohttpPushSocket:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        headers = {}
        token = self.auth.access_token if self.auth else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        ws = await self._session.ws_connect(
            f"{self.base_url}/ws/{conversation_id}",
            heartbeat=self.heartbeat,
            headers=headers,
        )
        return AiohttpPushSocket(ws)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


class TransportConnection:
    """
    A single push connection: Idle -> Connecting -> Open -> Closed.

    Closed is terminal and reachable from every state. A connection is never
    reopened; switching conversations means a new connection.
    """

    def __init__(self, conversation_id: str, connector: PushConnector):
        self.conversation_id = conversation_id
        self.state = ConnectionState.IDLE
        self._connector = connector
        self._socket: PushSocket | None = None
        self._reader: asyncio.Task | None = None
        self._listeners: list[EnvelopeListener] = []
        self._condition_listeners: list[ConditionListener] = []

    def add_listener(self, listener: EnvelopeListener) -> None:
        self._listeners.append(listener)

    def add_condition_listener(self, listener: ConditionListener) -> None:
        self._condition_listeners.append(listener)

    async def open(self) -> bool:
        """
        Connect and start the reader task.

        WHAT: Idle -> Connecting -> Open
        WHY: Connection failures are recoverable conditions, not faults
        HOW: Await the connector; a close() during Connecting wins over a late connect

        Returns:
            True if the connection reached Open
        """
        if self.state is not ConnectionState.IDLE:
            return self.state is ConnectionState.OPEN

        self.state = ConnectionState.CONNECTING
        try:
            socket = await self._connector.connect(self.conversation_id)
        except asyncio.CancelledError:
            self.state = ConnectionState.CLOSED
            raise
        except Exception as e:
            logger.warning(f"Push connect failed for {self.conversation_id}: {e}")
            self.state = ConnectionState.CLOSED
            self._report(TransportCondition.ERROR, str(e))
            return False

        if self.state is ConnectionState.CLOSED:
            # closed while connecting
            await self._close_socket(socket)
            return False

        self._socket = socket
        self.state = ConnectionState.OPEN
        self._reader = asyncio.create_task(
            self._read_loop(), name=f"push-reader-{self.conversation_id}"
        )
        logger.info(f"Push connection open for {self.conversation_id}")
        self._report(TransportCondition.OPENED)
        return True

    async def send(self, payload: str | dict) -> None:
        """Send a frame; only valid while Open."""
        if self.state is not ConnectionState.OPEN or self._socket is None:
            raise TransportNotReadyError(self.conversation_id, self.state)
        text = payload if isinstance(payload, str) else json.dumps(payload)
        await self._socket.send(text)

    async def close(self) -> None:
        """Explicit teardown; a no-op once Closed."""
        if self.state is ConnectionState.CLOSED:
            return
        was_open = self.state is ConnectionState.OPEN
        self.state = ConnectionState.CLOSED

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.wait([reader])

        if was_open and self._socket is not None:
            await self._close_socket(self._socket)
        logger.info(f"Push connection closed for {self.conversation_id}")

    async def _read_loop(self) -> None:
        try:
            async for frame in self._socket.frames():
                if self.state is not ConnectionState.OPEN:
                    break
                self._dispatch(decode_envelope(frame))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.state is ConnectionState.OPEN:
                logger.warning(f"Push transport error for {self.conversation_id}: {e}")
                self.state = ConnectionState.CLOSED
                await self._close_socket(self._socket)
                self._report(TransportCondition.ERROR, str(e))
            return

        if self.state is ConnectionState.OPEN:
            logger.info(f"Push connection for {self.conversation_id} closed by remote")
            self.state = ConnectionState.CLOSED
            self._report(TransportCondition.DISCONNECTED)

    def _dispatch(self, envelope: Envelope) -> None:
        if isinstance(envelope, Unrecognized):
            logger.warning(f"Dropped unrecognized push frame on {self.conversation_id}: {envelope.reason}")
            self._report(TransportCondition.PARSE_ERROR, envelope.reason)
            return
        for listener in list(self._listeners):
            try:
                listener(envelope)
            except Exception as e:
                logger.error(f"Envelope listener failed on {self.conversation_id}: {e}", exc_info=True)

    def _report(self, condition: TransportCondition, detail: str | None = None) -> None:
        event = TransportEvent(self.conversation_id, condition, detail)
        for listener in list(self._condition_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Condition listener failed on {self.conversation_id}: {e}", exc_info=True)

    async def _close_socket(self, socket: PushSocket) -> None:
        try:
            await socket.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing push socket for {self.conversation_id}: {e}")


class TransportManager:
    """
    Owns the push connection of one conversation scope.

    WHAT: Open/close/send for at most one live connection at a time
    WHY: Switching conversations must never leak frames across conversations
    HOW: Close the previous connection before opening the next; close only what was opened here
    """

    def __init__(self, connector: PushConnector | None, *, enabled: bool | None = None):
        self._connector = connector
        push_enabled = settings.PUSH_ENABLED if enabled is None else enabled
        self.enabled = push_enabled and connector is not None
        self._current: TransportConnection | None = None
        self._owned: set[TransportConnection] = set()

    @property
    def connection(self) -> TransportConnection | None:
        return self._current

    @property
    def state(self) -> ConnectionState:
        return self._current.state if self._current is not None else ConnectionState.IDLE

    async def activate(
        self,
        conversation_id: str,
        listeners: Iterable[EnvelopeListener],
        condition_listeners: Iterable[ConditionListener] = (),
    ) -> TransportConnection | None:
        """
        Switch the live connection to a conversation.

        Returns:
            The new connection, or None when push is disabled or the identity is empty
        """
        await self.deactivate()
        if not conversation_id or not self.enabled:
            return None

        connection = TransportConnection(conversation_id, self._connector)
        for listener in listeners:
            connection.add_listener(listener)
        for listener in condition_listeners:
            connection.add_condition_listener(listener)

        self._current = connection
        self._owned.add(connection)
        await connection.open()
        return connection

    async def deactivate(self) -> None:
        """Close the current connection, if this manager opened it."""
        connection, self._current = self._current, None
        if connection is not None and connection in self._owned:
            self._owned.discard(connection)
            await connection.close()

    async def send(self, payload: str | dict) -> None:
        if self._current is None:
            raise TransportNotReadyError("<none>", ConnectionState.IDLE)
        await self._current.send(payload)

    @asynccontextmanager
    async def session(
        self,
        conversation_id: str,
        listeners: Iterable[EnvelopeListener],
        condition_listeners: Iterable[ConditionListener] = (),
    ) -> AsyncIterator[TransportConnection | None]:
        """Scoped connection, closed on every exit path."""
        connection = await self.activate(conversation_id, listeners, condition_listeners)
        try:
            yield connection
        finally:
            if self._current is connection:
                await self.deactivate()
            elif connection is not None:
                await connection.close()

"""
Integration tests for conversation scopes and the engine.

WHAT: Test store + transport + unread aggregator working together
WHY: The push listener set, switching and teardown only show up end to end
HOW: Real scope/engine objects over the fake chat API and fake push connector
"""

import json

import pytest

from chatsync.api.v1.endpoints.conversations import conversation_event_generator
from chatsync.chat.types import ConnectionState, ErrorKind
from chatsync.core.engine import ChatEngine
from chatsync.models.message import MessageOrigin
from chatsync.services.conversation_scope import ConversationScope
from chatsync.services.unread_aggregator import UnreadAggregator
from tests.fixtures.fake_chat_api import FakeChatApi
from tests.fixtures.fake_transport import FakeConnector, settle
from tests.fixtures.factories import CURRENT_USER, make_message, wire_message, wire_receipt


@pytest.fixture
def api():
    api = FakeChatApi()
    api.history["t1"] = [make_message("m1", body="hi")]
    api.history["t2"] = [make_message("n1", conversation_id="t2")]
    return api


@pytest.fixture
def aggregator(auth, api):
    return UnreadAggregator(auth, api, refresh_interval=0)


@pytest.fixture
def scope(api, connector, aggregator):
    return ConversationScope(api, connector, aggregator, push_enabled=True)


def ids(scope):
    return [m.id for m in scope.view().messages]


@pytest.mark.integration
class TestConversationScope:
    """Test the conversation scope lifecycle."""

    @pytest.mark.asyncio
    async def test_open_connects_and_loads(self, scope, connector):
        """Test opening a live conversation connects push and loads history."""
        view = await scope.open("t1")

        assert [m.id for m in view.messages] == ["m1"]
        assert scope.connection_state is ConnectionState.OPEN
        assert connector.connect_calls == ["t1"]
        await scope.close()

    @pytest.mark.asyncio
    async def test_history_then_echo_single_message(self, scope, connector):
        """Test a push echo of a fetched message leaves one copy."""
        await scope.open("t1")

        connector.last.push(wire_message("m1", body="hi"))
        await settle()

        assert ids(scope) == ["m1"]
        await scope.close()

    @pytest.mark.asyncio
    async def test_push_reaches_store_and_aggregator(self, scope, connector, aggregator):
        """Test one delivery feeds both listeners independently."""
        await scope.open("t1")

        connector.last.push(wire_message("m2", timestamp="2024-05-01T11:00:00Z"))
        await settle()

        assert ids(scope) == ["m1", "m2"]
        assert scope.view().messages[-1].origin is MessageOrigin.PUSHED
        assert aggregator.count_for("t1") == 1
        await scope.close()

    @pytest.mark.asyncio
    async def test_receipt_resets_counter(self, scope, connector, aggregator):
        """Test a pushed receipt zeroes a counter of 5."""
        aggregator.apply_snapshot({"t1": 5})
        await scope.open("t1")
        aggregator.apply_snapshot({"t1": 5})

        connector.last.push(wire_receipt("t1", marked=3))
        await settle()

        assert aggregator.count_for("t1") == 0
        await scope.close()

    @pytest.mark.asyncio
    async def test_open_clears_badge_locally(self, scope, aggregator):
        """Test opening a conversation clears its badge optimistically."""
        aggregator.apply_snapshot({"t1": 2, "t2": 1})

        await scope.open("t1")

        assert aggregator.count_for("t1") == 0
        assert aggregator.count_for("t2") == 1
        await scope.close()

    @pytest.mark.asyncio
    async def test_switch_never_leaks_old_frames(self, scope, connector, aggregator):
        """Test frames from the previous conversation's socket never reach the new one."""
        await scope.open("t1")
        old_socket = connector.last

        await scope.open("t2")
        old_socket.push(wire_message("late", conversation_id="t1"))
        connector.last.push(wire_message("n2", conversation_id="t2", timestamp="2024-05-01T12:00:00Z"))
        await settle()

        assert old_socket.closed is True
        assert scope.conversation_id == "t2"
        assert ids(scope) == ["n1", "n2"]
        assert aggregator.count_for("t1") == 0
        await scope.close()

    @pytest.mark.asyncio
    async def test_send_then_echo(self, scope, connector, api):
        """Test an own message appears only when its broadcast arrives."""
        api.send_result = make_message("m9", sender_id=CURRENT_USER, origin=MessageOrigin.PENDING)
        await scope.open("t1")

        result = await scope.send("hello")
        assert result.accepted is True
        assert ids(scope) == ["m1"]

        connector.last.push(wire_message("m9", sender_id=CURRENT_USER, timestamp="2024-05-01T11:00:00Z"))
        await settle()

        assert ids(scope) == ["m1", "m9"]
        assert scope.view().pending == ()
        await scope.close()

    @pytest.mark.asyncio
    async def test_own_echo_not_counted_unread(self, scope, connector, aggregator):
        """Test the sender's own broadcast does not raise their badge."""
        await scope.open("t1")

        connector.last.push(wire_message("m9", sender_id=CURRENT_USER))
        await settle()

        assert aggregator.count_for("t1") == 0
        await scope.close()

    @pytest.mark.asyncio
    async def test_remote_close_surfaces_transport_error(self, scope, connector):
        """Test a dropped socket is a recoverable error on the view."""
        await scope.open("t1")

        connector.last.remote_close()
        await settle()

        view = scope.view()
        assert view.transport_error.kind is ErrorKind.TRANSIENT_NETWORK
        assert ids(scope) == ["m1"]
        await scope.close()

    @pytest.mark.asyncio
    async def test_connect_failure_still_loads_history(self, api, aggregator):
        """Test a failed push connect leaves a usable, non-live feed."""
        scope = ConversationScope(api, FakeConnector(should_fail=True), aggregator, push_enabled=True)

        view = await scope.open("t1")

        assert [m.id for m in view.messages] == ["m1"]
        assert view.transport_error is not None
        assert scope.connection_state is ConnectionState.CLOSED
        await scope.close()

    @pytest.mark.asyncio
    async def test_not_live_opens_no_connection(self, scope, connector):
        """Test live=False loads history without a socket."""
        await scope.open("t1", live=False)

        assert connector.connect_calls == []
        assert ids(scope) == ["m1"]

        await scope.set_live(True)
        assert connector.connect_calls == ["t1"]
        await scope.close()

    @pytest.mark.asyncio
    async def test_context_manager_closes_on_error(self, scope, connector):
        """Test leaving the scope on an exception still closes the socket."""
        with pytest.raises(RuntimeError):
            async with scope:
                await scope.open("t1")
                raise RuntimeError("view crashed")

        assert connector.last.closed is True
        assert scope.conversation_id is None
        assert scope.view().messages == ()

    @pytest.mark.asyncio
    async def test_mark_read_through_scope(self, scope, api, aggregator):
        """Test mark_read confirms the open conversation with the service."""
        await scope.open("t1")
        aggregator.on_message_delivered("t1", "u2", "x1")

        assert await scope.mark_read() is True

        assert aggregator.count_for("t1") == 0
        assert ("mark_read", "t1") in api.calls
        await scope.close()

    @pytest.mark.asyncio
    async def test_event_stream_yields_views(self, scope, connector):
        """Test the SSE generator emits the current view, then updates."""
        await scope.open("t1")
        events = conversation_event_generator(scope)

        first = await events.__anext__()
        connector.last.push(wire_message("m2", timestamp="2024-05-01T11:00:00Z"))
        await settle()
        second = await events.__anext__()
        await events.aclose()

        assert first["event"] == "conversation"
        assert [m["id"] for m in json.loads(first["data"])["messages"]] == ["m1"]
        assert [m["id"] for m in json.loads(second["data"])["messages"]] == ["m1", "m2"]
        await scope.close()


@pytest.mark.integration
class TestChatEngine:
    """Test the composition root."""

    @pytest.fixture
    def engine(self, auth, api, connector):
        return ChatEngine(auth, client=api, connector=connector, push_enabled=True)

    @pytest.mark.asyncio
    async def test_open_reuses_scope(self, engine, connector):
        """Test re-opening a conversation reuses its scope and reloads."""
        first = await engine.open_conversation("t1")
        second = await engine.open_conversation("t1")

        assert first is second
        assert engine.open_conversations == ["t1"]
        assert len(connector.connect_calls) == 1
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_scopes_share_aggregator(self, engine, connector):
        """Test deliveries in different scopes land in one counter map."""
        await engine.open_conversation("t1")
        first_socket = connector.last
        await engine.open_conversation("t2")

        first_socket.push(wire_message("a", conversation_id="t1"))
        connector.last.push(wire_message("b", conversation_id="t2"))
        await settle()

        assert engine.unread.total_unread == 2
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_send_requests_list_refresh(self, engine, api):
        """Test a successful send asks the transaction list to refetch."""
        await engine.start()
        await settle()
        engine.transactions._clock = lambda: float("inf")
        before = api.count("get_transactions")

        scope = await engine.open_conversation("t1")
        await scope.send("hello")
        await settle()

        assert api.count("get_transactions") == before + 1
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_releases_everything(self, engine, api, connector):
        """Test shutdown closes scopes, polling and clients."""
        await engine.start()
        await engine.open_conversation("t1")
        socket = connector.last

        await engine.shutdown()

        assert socket.closed is True
        assert engine.open_conversations == []
        assert engine.transactions.is_polling(False) is False
        assert api.closed is True
        assert connector.closed is True

    @pytest.mark.asyncio
    async def test_close_unknown_conversation(self, engine):
        """Test closing a conversation that is not open reports False."""
        assert await engine.close_conversation("nope") is False

"""
Unit tests for the unread aggregator.

WHAT: Test counting, receipts, optimistic clears, mark-read rollback and refresh
WHY: Badges in every surface read this one map; it must never drift
HOW: Drive UnreadAggregator directly and through envelopes, fake chat API for REST
"""

import asyncio

import pytest

from chatsync.chat.auth import StaticAuthSession
from chatsync.chat.types import ChatUnavailableError, ErrorKind
from chatsync.models.message import ReadReceipt
from chatsync.services.unread_aggregator import CounterSource, UnreadAggregator
from tests.fixtures.fake_chat_api import FakeChatApi
from tests.fixtures.fake_transport import settle
from tests.fixtures.factories import CURRENT_USER, OTHER_USER, make_message


@pytest.fixture
def api():
    return FakeChatApi()


@pytest.fixture
def aggregator(auth, api):
    return UnreadAggregator(auth, api, refresh_interval=0, dedup_window=100)


@pytest.mark.unread
@pytest.mark.unit
class TestDelivery:
    """Test delivery counting."""

    @pytest.mark.parametrize("deliveries", [1, 3, 12])
    def test_counter_equals_foreign_deliveries(self, aggregator, deliveries):
        """Test N deliveries from others produce a count of N."""
        for index in range(deliveries):
            aggregator.on_message_delivered("t1", OTHER_USER, f"m{index}")

        assert aggregator.count_for("t1") == deliveries
        assert aggregator.total_unread == deliveries

    def test_own_messages_not_counted(self, aggregator):
        """Test the current user's messages never increment."""
        assert aggregator.on_message_delivered("t1", CURRENT_USER, "m1") is False
        assert aggregator.count_for("t1") == 0

    def test_numeric_sender_compared_as_string(self):
        """Test integer sender ids from the wire match the session user."""
        aggregator = UnreadAggregator(StaticAuthSession("tok", user_id=7))

        assert aggregator.on_message_delivered("t1", 7, "m1") is False
        assert aggregator.on_message_delivered("t1", 8, "m2") is True

    def test_no_user_no_increment(self, anonymous):
        """Test deliveries are ignored while nobody is signed in."""
        aggregator = UnreadAggregator(anonymous)

        assert aggregator.on_message_delivered("t1", OTHER_USER, "m1") is False
        assert aggregator.total_unread == 0

    def test_same_message_counted_once(self, aggregator):
        """Test a redelivered message id is not counted twice."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")

        assert aggregator.count_for("t1") == 1

    def test_dedup_window_is_bounded(self, auth):
        """Test the recent-id window forgets the oldest ids."""
        aggregator = UnreadAggregator(auth, dedup_window=2)
        for message_id in ["a", "b", "c"]:
            aggregator.on_message_delivered("t1", OTHER_USER, message_id)

        assert aggregator.on_message_delivered("t1", OTHER_USER, "a") is True
        assert aggregator.count_for("t1") == 4

    def test_counters_independent_per_conversation(self, aggregator):
        """Test each delivery increments exactly one counter."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        aggregator.on_message_delivered("t2", OTHER_USER, "m2")
        aggregator.on_message_delivered("t2", OTHER_USER, "m3")

        assert aggregator.count_for("t1") == 1
        assert aggregator.count_for("t2") == 2
        assert aggregator.total_unread == 3


@pytest.mark.unread
@pytest.mark.unit
class TestResets:
    """Test receipts, local clears and their precedence."""

    def test_receipt_resets_to_zero(self, aggregator):
        """Test a receipt for 3 against a counter of 5 leaves 0."""
        for index in range(5):
            aggregator.on_message_delivered("t1", OTHER_USER, f"m{index}")

        aggregator.handle_envelope(ReadReceipt(conversation_id="t1", marked_count=3))

        assert aggregator.count_for("t1") == 0
        assert aggregator.source_for("t1") is CounterSource.RECEIPT

    def test_receipt_is_idempotent(self, aggregator):
        """Test repeated receipts keep the counter at zero."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")

        aggregator.on_read_receipt("t1", 1)
        aggregator.on_read_receipt("t1", 1)
        aggregator.on_read_receipt("t1", 0)

        assert aggregator.count_for("t1") == 0

    def test_receipt_leaves_other_conversations(self, aggregator):
        """Test a receipt only touches its own conversation."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        aggregator.on_message_delivered("t2", OTHER_USER, "m2")

        aggregator.on_read_receipt("t1")

        assert aggregator.count_for("t2") == 1

    def test_local_clear_then_delivery(self, aggregator):
        """Test deliveries after an optimistic clear count from zero."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        aggregator.clear_locally("t1")

        aggregator.on_message_delivered("t1", OTHER_USER, "m2")

        assert aggregator.count_for("t1") == 1

    def test_authoritative_snapshot_overrides_local_clear(self, aggregator):
        """Test the server snapshot wins over an optimistic clear."""
        aggregator.clear_locally("t1")

        aggregator.apply_snapshot({"t1": 2})

        assert aggregator.count_for("t1") == 2
        assert aggregator.source_for("t1") is CounterSource.SNAPSHOT

    def test_snapshot_zeroes_missing_conversations(self, aggregator):
        """Test conversations absent from the snapshot have no unread."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")

        aggregator.apply_snapshot({"t2": 4})

        assert aggregator.count_for("t1") == 0
        assert aggregator.snapshot().counts == {"t1": 0, "t2": 4}

    def test_subscribers_receive_immutable_snapshots(self, aggregator):
        """Test readers see whole snapshots and cannot write the map."""
        seen = []
        unsubscribe = aggregator.subscribe(seen.append)

        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        unsubscribe()
        aggregator.on_message_delivered("t1", OTHER_USER, "m2")

        assert len(seen) == 1
        assert seen[0].total == 1
        with pytest.raises(TypeError):
            seen[0].counts["t1"] = 99

    def test_failing_subscriber_isolated(self, aggregator):
        """Test one broken reader does not block the others."""
        seen = []

        def broken(snapshot):
            raise RuntimeError("render failed")

        aggregator.subscribe(broken)
        aggregator.subscribe(seen.append)

        aggregator.on_message_delivered("t1", OTHER_USER, "m1")

        assert seen[-1].count_for("t1") == 1


@pytest.mark.unread
@pytest.mark.unit
class TestMarkRead:
    """Test mark_read confirm and rollback."""

    @pytest.mark.asyncio
    async def test_mark_read_success(self, api, aggregator):
        """Test a confirmed mark-read leaves zero with receipt precedence."""
        api.mark_read_result = 2
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        aggregator.on_message_delivered("t1", OTHER_USER, "m2")

        assert await aggregator.mark_read("t1") is True

        assert aggregator.count_for("t1") == 0
        assert aggregator.source_for("t1") is CounterSource.RECEIPT
        assert api.calls[-1] == ("mark_read", "t1")

    @pytest.mark.asyncio
    async def test_mark_read_failure_restores_previous_count(self, api, aggregator):
        """Test a failed mark-read puts the badge back."""
        api.mark_read_result = ChatUnavailableError("down")
        for index in range(3):
            aggregator.on_message_delivered("t1", OTHER_USER, f"m{index}")

        assert await aggregator.mark_read("t1") is False

        assert aggregator.count_for("t1") == 3
        assert aggregator.error.kind is ErrorKind.TRANSIENT_NETWORK

    @pytest.mark.asyncio
    async def test_mark_read_failure_keeps_newer_state(self, api, aggregator):
        """Test a receipt that lands during the request is not rolled back."""
        api.mark_read_result = ChatUnavailableError("down")
        gate = api.hold("mark_read:t1")
        for index in range(3):
            aggregator.on_message_delivered("t1", OTHER_USER, f"m{index}")

        pending = asyncio.create_task(aggregator.mark_read("t1"))
        await settle()
        assert aggregator.count_for("t1") == 0
        aggregator.on_read_receipt("t1", 3)
        gate.set()

        assert await pending is False
        assert aggregator.count_for("t1") == 0

    @pytest.mark.asyncio
    async def test_mark_read_failure_after_stop(self, api, aggregator):
        """Test a mark-read that fails after shutdown cleared the counters does not resurrect them."""
        api.mark_read_result = ChatUnavailableError("down")
        gate = api.hold("mark_read:t1")
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")

        pending = asyncio.create_task(aggregator.mark_read("t1"))
        await settle()
        await aggregator.stop()
        gate.set()

        assert await pending is False
        assert aggregator.count_for("t1") == 0
        assert aggregator.source_for("t1") is None

    @pytest.mark.asyncio
    async def test_mark_read_success_after_stop(self, api, aggregator):
        """Test a confirmed mark-read after shutdown leaves no counter behind."""
        api.mark_read_result = 1
        gate = api.hold("mark_read:t1")
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")

        pending = asyncio.create_task(aggregator.mark_read("t1"))
        await settle()
        await aggregator.stop()
        gate.set()

        assert await pending is True
        assert aggregator.source_for("t1") is None


@pytest.mark.unread
@pytest.mark.unit
class TestRefresh:
    """Test authoritative refresh and lifecycle."""

    @pytest.mark.asyncio
    async def test_refresh_applies_snapshot(self, api, aggregator):
        """Test refresh installs the server's counts."""
        api.unread_result = {"t1": 4, "t2": 1}

        assert await aggregator.refresh() is True

        assert aggregator.total_unread == 5
        assert aggregator.error is None

    @pytest.mark.asyncio
    async def test_superseded_refresh_discarded(self, api, aggregator):
        """Test an older refresh resolving last does not win."""
        api.unread_result = {"t1": 9}
        gate = api.hold("unread")
        first = asyncio.create_task(aggregator.refresh())
        await settle()

        del api.gates["unread"]
        api.unread_result = {"t1": 1}
        assert await aggregator.refresh() is True
        gate.set()

        assert await first is False
        assert aggregator.count_for("t1") == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_counts(self, api, aggregator):
        """Test a failed refresh records an error and changes nothing."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        api.unread_result = ChatUnavailableError("down")

        assert await aggregator.refresh() is False

        assert aggregator.count_for("t1") == 1
        assert aggregator.error.retryable is True

    @pytest.mark.asyncio
    async def test_refresh_without_session_clears(self, api, anonymous):
        """Test signing out drops every counter."""
        aggregator = UnreadAggregator(anonymous, api)
        aggregator.apply_snapshot({"t1": 3})

        assert await aggregator.refresh() is False

        assert aggregator.total_unread == 0
        assert api.count("get_unread_counts") == 0

    @pytest.mark.asyncio
    async def test_start_polls_and_stop_forgets(self, auth, api):
        """Test start() refreshes immediately and stop() clears everything."""
        api.unread_result = {"t1": 2}
        aggregator = UnreadAggregator(auth, api, refresh_interval=60)

        aggregator.start()
        await settle()
        assert aggregator.count_for("t1") == 2

        await aggregator.stop()
        assert aggregator.total_unread == 0
        assert api.count("get_unread_counts") == 1

    @pytest.mark.asyncio
    async def test_watch_streams_current_then_updates(self, aggregator):
        """Test the async stream starts from the current snapshot."""
        aggregator.on_message_delivered("t1", OTHER_USER, "m1")
        stream = aggregator.watch()

        first = await stream.__anext__()
        aggregator.on_message_delivered("t1", OTHER_USER, "m2")
        second = await stream.__anext__()
        await stream.aclose()

        assert first.count_for("t1") == 1
        assert second.count_for("t1") == 2
        assert len(aggregator.changes) == 0

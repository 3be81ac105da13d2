"""
Unit tests for Session: lifecycle, line routing, bulk control requests and messages.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from conftest import SERVER_URL, FakeTransport, session_header
from lightstreamer_client.config import SessionConfig
from lightstreamer_client.errors import (
    AuthenticationError,
    IllegalMessageError,
    InvalidItemError,
    NotConnectedError,
    RequestError,
    SessionEndError,
    SubscriptionError,
)
from lightstreamer_client.session import Session
from lightstreamer_client.types import SessionState


@pytest.fixture
def session(config: SessionConfig, transport: FakeTransport) -> Session:
    """Create a session on the fake transport."""
    return Session(config, transport, name="test_session")


@pytest_asyncio.fixture
async def connected(session: Session, transport: FakeTransport):
    """Connect the session to a stream that stays open until the test ends."""
    transport.add_stream(session_header("S1"), hold=True)
    await session.connect()
    yield session
    await session.disconnect()


class TestSessionConnect:
    """Tests for connect and disconnect."""

    @pytest.mark.asyncio
    async def test_connect(self, session: Session, transport: FakeTransport) -> None:
        transport.add_stream(session_header("S1"), hold=True)

        await session.connect()

        assert session.connected
        assert session.session_id == "S1"
        assert session.state == SessionState.CONNECTED
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, session: Session, transport: FakeTransport) -> None:
        transport.add_stream(session_header("S1"), hold=True)

        await session.connect()
        await session.connect()

        assert len(transport.stream_requests) == 1
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_concurrent_connects_create_one_session(
        self, session: Session, transport: FakeTransport
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        transport.add_stream(session_header("S2"), hold=True)

        await asyncio.gather(session.connect(), session.connect())

        assert len(transport.stream_requests) == 1
        assert session.session_id == "S1"

        await session.disconnect()
        task_names = {task.get_name() for task in asyncio.all_tasks()}
        assert "test_session_processing" not in task_names
        assert "test_session_stream_run" not in task_names

    @pytest.mark.asyncio
    async def test_connect_failure_leaves_session_disconnected(
        self, session: Session, transport: FakeTransport
    ) -> None:
        transport.add_stream("ERROR\r\n1\r\nBad credentials\r\n")

        with pytest.raises(AuthenticationError):
            await session.connect()

        assert not session.connected
        assert session.session_id is None
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_destroys_session(
        self, session: Session, transport: FakeTransport
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        await session.connect()

        await session.disconnect()

        assert transport.post_params() == [{"LS_session": "S1", "LS_op": "destroy"}]
        assert not session.connected
        assert session.state == SessionState.DISCONNECTED
        # An injected transport belongs to the caller
        assert not transport.closed

    @pytest.mark.asyncio
    async def test_disconnect_when_destroy_fails(
        self, session: Session, transport: FakeTransport
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        await session.connect()
        transport.add_post_error(RequestError("Connection reset"))

        await session.disconnect()

        assert not session.connected

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected(self, session: Session) -> None:
        await session.disconnect()
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_deactivates_subscriptions(
        self, session: Session, transport: FakeTransport
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        await session.connect()
        subscription = session.build_subscription(["item1"], ["a"], "merge")
        await subscription.start()

        await session.disconnect()

        assert not subscription.active

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect(
        self, session: Session, transport: FakeTransport
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        transport.add_stream(session_header("S2"), hold=True)

        await session.connect()
        await session.disconnect()
        await session.connect()

        assert session.session_id == "S2"
        await session.disconnect()


class TestSessionStreamEnd:
    """Tests for the end of the stream connection."""

    @pytest.mark.asyncio
    async def test_end_invokes_error_callbacks(
        self, session: Session, transport: FakeTransport, settle
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        on_error = MagicMock()
        session.on_error(on_error)

        await session.connect()
        subscription = session.build_subscription(["item1"], ["a"], "merge")
        await subscription.start()
        transport.push("END 5\r\n")
        transport.close_stream()
        await settle()

        on_error.assert_called_once()
        error = on_error.call_args.args[0]
        assert isinstance(error, SessionEndError)
        assert error.cause_code == 5
        assert session.error is error
        assert not session.connected
        assert not subscription.active

    @pytest.mark.asyncio
    async def test_lines_before_end_are_processed(
        self, session: Session, transport: FakeTransport, settle
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        await session.connect()
        subscription = session.build_subscription(["item1"], ["a"], "merge")
        await subscription.start()

        transport.push("1,1|last\r\nEND\r\n")
        transport.close_stream()
        await settle()

        assert subscription.item_data("item1") == {"a": "last"}
        assert isinstance(session.error, SessionEndError)

    @pytest.mark.asyncio
    async def test_end_in_header_chunk_is_delivered_after_connect(
        self, session: Session, transport: FakeTransport, settle
    ) -> None:
        transport.add_stream(session_header("S1") + "MSG,seq,1,DONE\r\nEND 31\r\n")
        on_result = MagicMock()
        on_error = MagicMock()
        session.on_message_result(on_result)
        session.on_error(on_error)

        await session.connect()
        await settle()

        on_result.assert_called_once_with("seq", [1], None)
        on_error.assert_called_once()
        assert on_error.call_args.args[0].cause_code == 31
        assert not session.connected


class TestSessionRouting:
    """Tests for stream line routing."""

    @pytest.mark.asyncio
    async def test_update_reaches_subscription(
        self, connected: Session, transport: FakeTransport, settle
    ) -> None:
        subscription = connected.build_subscription(["item1"], ["a", "b"], "merge")
        on_data = MagicMock()
        subscription.on_data(on_data)
        await subscription.start(snapshot=True)

        transport.push("1,1|x|y\r\n")
        await settle()

        assert subscription.item_data("item1") == {"a": "x", "b": "y"}
        on_data.assert_called_once()
        assert connected.stats.lines_claimed == 1
        assert connected.stats.by_subscription == {1: 1}

    @pytest.mark.asyncio
    async def test_start_sends_add_request(
        self, connected: Session, transport: FakeTransport
    ) -> None:
        subscription = connected.build_subscription(
            ["item1", "item2"], ["a"], "distinct", data_adapter="QUOTES"
        )

        await subscription.start(snapshot=True)

        url, _ = transport.posts[-1]
        assert url == f"{SERVER_URL}/lightstreamer/control.txt"
        assert transport.post_params() == [
            {
                "LS_session": "S1",
                "LS_op": "add",
                "LS_table": "1",
                "LS_mode": "DISTINCT",
                "LS_id": "item1 item2",
                "LS_schema": "a",
                "LS_data_adapter": "QUOTES",
                "LS_requested_max_frequency": "0.0",
                "LS_snapshot": "true",
            }
        ]

    @pytest.mark.asyncio
    async def test_line_is_routed_by_table_id(
        self, connected: Session, transport: FakeTransport, settle
    ) -> None:
        first = connected.build_subscription(["item1"], ["a"], "merge")
        second = connected.build_subscription(["item1"], ["a"], "merge")
        on_first = first.on_data(MagicMock())
        on_second = second.on_data(MagicMock())

        transport.push("2,1|v\r\n")
        await settle()

        on_first.assert_not_called()
        on_second.assert_called_once()

    @pytest.mark.asyncio
    async def test_unprocessed_line(
        self, connected: Session, transport: FakeTransport, settle
    ) -> None:
        on_unprocessed = MagicMock()
        connected.on_unprocessed_line(on_unprocessed)

        transport.push("9,1|orphan\r\n")
        await settle()

        on_unprocessed.assert_called_once_with("9,1|orphan")
        assert connected.stats.unprocessed_lines == 1

    @pytest.mark.asyncio
    async def test_message_outcome(
        self, connected: Session, transport: FakeTransport, settle
    ) -> None:
        on_result = MagicMock()
        connected.on_message_result(on_result)

        transport.push("MSG,orders,3,DONE\r\nMSG,orders,4,ERR,34,Illegal\r\n")
        await settle()

        assert on_result.call_count == 2
        assert on_result.call_args_list[0].args == ("orders", [3], None)
        sequence, numbers, error = on_result.call_args_list[1].args
        assert (sequence, numbers) == ("orders", [4])
        assert isinstance(error, IllegalMessageError)

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_processing(
        self, connected: Session, transport: FakeTransport, settle
    ) -> None:
        subscription = connected.build_subscription(["item1"], ["a"], "merge")
        subscription.on_data(MagicMock(side_effect=RuntimeError("boom")))

        transport.push("1,1|x\r\n1,1|y\r\n")
        await settle()

        assert subscription.item_data("item1") == {"a": "y"}
        assert connected.connected

    @pytest.mark.asyncio
    async def test_disconnect_from_callback(
        self, session: Session, transport: FakeTransport, settle
    ) -> None:
        transport.add_stream(session_header("S1"), hold=True)
        await session.connect()
        subscription = session.build_subscription(["item1"], ["a"], "merge")

        async def on_data(*args) -> None:
            await session.disconnect()

        subscription.on_data(on_data)
        transport.push("1,1|x\r\n")
        await settle()

        assert not session.connected
        assert session.state == SessionState.DISCONNECTED


class TestSessionSubscriptions:
    """Tests for subscription management."""

    @pytest.mark.asyncio
    async def test_subscription_ids_are_unique(self, session: Session) -> None:
        first = session.build_subscription(["i"], ["f"], "merge")
        second = session.build_subscription(["i"], ["f"], "merge")
        assert first.id != second.id
        assert session.subscriptions == [first, second]

    @pytest.mark.asyncio
    async def test_build_subscription_validates(self, session: Session) -> None:
        with pytest.raises(SubscriptionError):
            session.build_subscription([], ["f"], "merge")

    @pytest.mark.asyncio
    async def test_remove_subscription(
        self, connected: Session, transport: FakeTransport
    ) -> None:
        subscription = connected.build_subscription(["i"], ["f"], "merge")
        await subscription.start()

        await connected.remove_subscription(subscription)

        assert transport.post_params()[0]["LS_op"] == "delete"
        assert subscription not in connected.subscriptions
        assert subscription.session is None
        assert not subscription.active

    @pytest.mark.asyncio
    async def test_remove_foreign_subscription(
        self, session: Session, config: SessionConfig, transport: FakeTransport
    ) -> None:
        other = Session(config, transport)
        subscription = other.build_subscription(["i"], ["f"], "merge")

        with pytest.raises(SubscriptionError):
            await session.remove_subscription(subscription)

    @pytest.mark.asyncio
    async def test_bulk_start(self, connected: Session, transport: FakeTransport) -> None:
        first = connected.build_subscription(["i1"], ["f"], "merge")
        second = connected.build_subscription(["i2"], ["f"], "merge")
        transport.add_post("OK\r\nERROR\r\n21\r\nInvalid item\r\n")

        errors = await connected.bulk_subscription_start([first, second], snapshot=True)

        assert errors[0] is None
        assert isinstance(errors[1], InvalidItemError)
        assert first.active
        assert not second.active

        bodies = transport.post_params()
        assert [body["LS_table"] for body in bodies] == ["1", "2"]
        assert all(body["LS_op"] == "add" and body["LS_session"] == "S1" for body in bodies)

    @pytest.mark.asyncio
    async def test_bulk_stop(self, connected: Session, transport: FakeTransport) -> None:
        first = connected.build_subscription(["i1"], ["f"], "merge")
        second = connected.build_subscription(["i2"], ["f"], "merge")
        transport.add_post("OK\r\nOK\r\n")
        await connected.bulk_subscription_start([first, second], silent=True)
        assert transport.post_params()[0]["LS_op"] == "add_silent"

        transport.add_post("OK\r\nOK\r\n")
        errors = await connected.bulk_subscription_stop([first, second])

        assert errors == [None, None]
        assert not first.active and not second.active
        assert [body["LS_op"] for body in transport.post_params()] == ["delete", "delete"]

    @pytest.mark.asyncio
    async def test_bulk_with_no_subscriptions(
        self, connected: Session, transport: FakeTransport
    ) -> None:
        posts_before = len(transport.posts)
        assert await connected.bulk_subscription_start([]) == []
        assert len(transport.posts) == posts_before

    @pytest.mark.asyncio
    async def test_start_before_connect_raises(
        self, session: Session, transport: FakeTransport
    ) -> None:
        subscription = session.build_subscription(["i"], ["f"], "merge")

        with pytest.raises(NotConnectedError):
            await subscription.start()
        assert not subscription.active
        assert transport.posts == []

        transport.add_stream(session_header("S1"), hold=True)
        await session.connect()
        await subscription.start()

        assert subscription.active
        assert transport.post_params()[0]["LS_op"] == "add"
        await session.disconnect()

    @pytest.mark.asyncio
    async def test_bulk_start_when_disconnected_raises(
        self, session: Session, transport: FakeTransport
    ) -> None:
        subscription = session.build_subscription(["i"], ["f"], "merge")

        with pytest.raises(NotConnectedError):
            await session.bulk_subscription_start([subscription])
        with pytest.raises(NotConnectedError):
            await session.bulk_subscription_stop([subscription])
        assert not subscription.active
        assert transport.posts == []


class TestSessionControl:
    """Tests for messages, bandwidth and rebinding."""

    @pytest.mark.asyncio
    async def test_send_message(self, connected: Session, transport: FakeTransport) -> None:
        await connected.send_message("hello world")

        url, _ = transport.posts[-1]
        assert url == f"{SERVER_URL}/lightstreamer/send_message.txt"
        assert transport.post_params() == [{"LS_session": "S1", "LS_message": "hello world"}]

    @pytest.mark.asyncio
    async def test_send_message_asynchronously(
        self, connected: Session, transport: FakeTransport
    ) -> None:
        await connected.send_message(
            "buy", asynchronous=True, sequence="orders", number=2, max_wait=500
        )

        assert transport.post_params() == [
            {
                "LS_session": "S1",
                "LS_message": "buy",
                "LS_sequence": "orders",
                "LS_msg_prog": "2",
                "LS_max_wait": "500",
            }
        ]

    @pytest.mark.asyncio
    async def test_asynchronous_message_requires_sequence(self, connected: Session) -> None:
        with pytest.raises(ValueError):
            await connected.send_message("buy", asynchronous=True)

    @pytest.mark.asyncio
    async def test_send_message_error(self, connected: Session, transport: FakeTransport) -> None:
        transport.add_post("ERROR\r\n34\r\nIllegal\r\n")

        with pytest.raises(IllegalMessageError):
            await connected.send_message("bad")

    @pytest.mark.asyncio
    async def test_send_message_when_disconnected(self, session: Session) -> None:
        with pytest.raises(NotConnectedError, match="not connected"):
            await session.send_message("hello")

    @pytest.mark.asyncio
    async def test_bandwidth_when_disconnected_is_local(
        self, session: Session, transport: FakeTransport
    ) -> None:
        await session.set_requested_maximum_bandwidth(20)

        assert session.requested_maximum_bandwidth == 20.0
        assert transport.posts == []

    @pytest.mark.asyncio
    async def test_bandwidth_when_connected_sends_constrain(
        self, connected: Session, transport: FakeTransport
    ) -> None:
        await connected.set_requested_maximum_bandwidth(12.5)

        assert transport.post_params() == [
            {"LS_session": "S1", "LS_op": "constrain", "LS_requested_max_bandwidth": "12.5"}
        ]
        assert connected.requested_maximum_bandwidth == 12.5

    @pytest.mark.asyncio
    async def test_negative_bandwidth(self, session: Session) -> None:
        with pytest.raises(ValueError):
            await session.set_requested_maximum_bandwidth(-1)

    @pytest.mark.asyncio
    async def test_force_rebind(self, connected: Session, transport: FakeTransport) -> None:
        await connected.force_rebind()
        assert transport.post_params() == [{"LS_session": "S1", "LS_op": "force_rebind"}]

    @pytest.mark.asyncio
    async def test_control_request_when_disconnected_raises(
        self, session: Session, transport: FakeTransport
    ) -> None:
        with pytest.raises(NotConnectedError):
            await session.control_request("destroy")
        assert transport.posts == []

    @pytest.mark.asyncio
    async def test_force_rebind_when_disconnected_is_noop(
        self, session: Session, transport: FakeTransport
    ) -> None:
        await session.force_rebind()
        assert transport.posts == []

    @pytest.mark.asyncio
    async def test_get_stats(self, connected: Session) -> None:
        stats = connected.get_stats()

        assert stats["state"] == "connected"
        assert stats["session_id"] == "S1"
        assert stats["stream"]["state"] == "bound"
        assert stats["lines_processed"] == 0


class TestSessionOwnedTransport:
    """Tests for the default transport."""

    @pytest.mark.asyncio
    async def test_owned_transport_is_closed(self, config: SessionConfig) -> None:
        session = Session(config)
        session._transport = MagicMock()
        session._transport.close = AsyncMock()

        await session.disconnect()

        session._transport.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_owned_transport_is_closed_when_stream_ends(
        self, config: SessionConfig, transport: FakeTransport, settle
    ) -> None:
        session = Session(config)
        session._transport = transport
        transport.add_stream(session_header("S1"), "END\r\n")

        await session.connect()
        await settle()

        assert not session.connected
        assert transport.closed

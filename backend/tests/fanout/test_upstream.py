"""Tests for UpstreamLink (websockets mocked)."""

import asyncio
import json
from unittest.mock import patch

import pytest
from websockets.exceptions import InvalidURI

from app.fanout.models import LinkState
from app.fanout.router import SubscriptionRouter
from app.fanout.upstream import UpstreamLink, redact_url
from fakes import FakeConnection, make_subscriber, queued, wait_until

URL = "wss://provider.test/v1/quotes/price?apikey=secret-key"


def _link(**kwargs) -> UpstreamLink:
    params = {
        "max_reconnect_attempts": 3,
        "reconnect_interval": 0.01,
        "heartbeat_interval": 60.0,  # Long interval so heartbeats don't interfere
    }
    params.update(kwargs)
    return UpstreamLink(URL, **params)


def _price(symbol: str, price: float = 190.5) -> str:
    return json.dumps({"event": "price", "symbol": symbol, "price": price, "timestamp": 1707580800})


def test_redact_url():
    """Test that the API key never reaches the logs."""
    assert redact_url(URL) == "wss://provider.test/v1/quotes/price?apikey=***"
    assert redact_url("wss://x/?a=1&apikey=k&b=2") == "wss://x/?a=1&apikey=***&b=2"


@pytest.mark.asyncio
class TestUpstreamLink:
    """State machine, commands and inbound decoding."""

    async def test_connect_reaches_connected(self):
        """Test the happy-path handshake."""
        link = _link()
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[conn]):
            assert link.state is LinkState.DISCONNECTED
            link.connect()
            assert link.state is LinkState.CONNECTING
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            assert link.reconnect_attempts == 0
            await link.close()

    async def test_connect_is_idempotent(self):
        """Test that connect() while connecting or connected is a no-op."""
        link = _link()
        with patch.object(link, "_open_connection", side_effect=[FakeConnection()]) as mock_open:
            link.connect()
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            link.connect()
            await asyncio.sleep(0.02)
            assert mock_open.await_count == 1
            await link.close()

    async def test_send_while_disconnected_is_noop(self):
        """Test that commands are dropped, not queued, when not connected."""
        link = _link()
        assert await link.send_subscribe("AAPL") is False
        assert await link.send_unsubscribe("AAPL") is False

    async def test_send_commands(self):
        """Test the subscribe/unsubscribe wire format."""
        link = _link()
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[conn]):
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)

            assert await link.send_subscribe("AAPL", "MSFT") is True
            assert await link.send_unsubscribe("AAPL") is True
            assert await link.send_subscribe() is False
            assert conn.sent == [
                {"action": "subscribe", "params": {"symbols": "AAPL,MSFT"}},
                {"action": "unsubscribe", "params": {"symbols": "AAPL"}},
            ]
            await link.close()

    async def test_price_events_dispatched(self):
        """Test that price messages reach the event handlers, others don't."""
        link = _link()
        received = []
        link.on_event(received.append)
        conn = FakeConnection(
            _price("AAPL"),
            '{"event": "subscribe-status", "status": "ok", "success": [{"symbol": "AAPL"}]}',
            '{"event": "heartbeat", "status": "ok"}',
            _price("MSFT", 420.0),
        )
        with patch.object(link, "_open_connection", side_effect=[conn]):
            link.connect()
            await wait_until(lambda: len(received) == 2)
            assert [e.symbol for e in received] == ["AAPL", "MSFT"]
            assert received[0].raw == _price("AAPL")
            await link.close()

    async def test_malformed_payloads_ignored(self):
        """Test that bad upstream messages are skipped without dropping the link."""
        link = _link()
        received = []
        link.on_event(received.append)
        conn = FakeConnection("not json", "[1, 2]", '{"event": "price", "price": 1.0}', _price("AAPL"))
        with patch.object(link, "_open_connection", side_effect=[conn]):
            link.connect()
            await wait_until(lambda: len(received) == 1)
            assert link.state is LinkState.CONNECTED
            await link.close()

    async def test_deeply_nested_payload_ignored(self):
        """Test that JSON too deep to decode is skipped and a later drop still reconnects."""
        link = _link(reconnect_interval=0.1)
        received = []
        link.on_event(received.append)
        conn = FakeConnection("[" * 100000, _price("AAPL"))
        with patch.object(link, "_open_connection", side_effect=[conn, FakeConnection()]):
            link.connect()
            await wait_until(lambda: len(received) == 1)
            assert link.state is LinkState.CONNECTED

            conn.drop()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            await link.close()

    async def test_reader_failure_schedules_reconnect(self):
        """Test that an unexpected error while reading is treated as an unclean close."""
        link = _link(reconnect_interval=0.1)
        conn = FakeConnection(_price("AAPL"))
        with (
            patch.object(link, "_open_connection", side_effect=[conn, FakeConnection()]),
            patch.object(link, "_handle_message", side_effect=RuntimeError("boom")),
        ):
            link.connect()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            assert link.reconnect_attempts == 1
            assert conn.closed
            await link.close()

    async def test_invalid_utf8_frame_dropped(self):
        """Test that binary frames are forwarded only when they decode exactly."""
        link = _link()
        received = []
        link.on_event(received.append)
        bad = b'{"event": "price", "symbol": "\xff", "price": 1.0}'
        conn = FakeConnection(bad, _price("AAPL").encode())
        with patch.object(link, "_open_connection", side_effect=[conn]):
            link.connect()
            await wait_until(lambda: len(received) == 1)
            assert received[0].symbol == "AAPL"
            assert received[0].raw == _price("AAPL")
            await link.close()

    async def test_failing_handler_does_not_break_dispatch(self):
        """Test that one handler raising doesn't starve the others."""
        link = _link()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        link.on_event(broken)
        link.on_event(received.append)
        with patch.object(link, "_open_connection", side_effect=[FakeConnection(_price("AAPL"))]):
            link.connect()
            await wait_until(lambda: len(received) == 1)
            assert link.state is LinkState.CONNECTED
            await link.close()

    async def test_unclean_close_schedules_reconnect(self):
        """Test that a dropped connection reconnects after the backoff."""
        link = _link(reconnect_interval=0.1)
        first, second = FakeConnection(), FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[first, second]) as mock_open:
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)

            first.drop()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            assert link.reconnect_attempts == 1

            await wait_until(lambda: mock_open.await_count == 2 and link.state is LinkState.CONNECTED)
            assert link.reconnect_attempts == 0  # Reset on successful connect
            await link.close()

    async def test_clean_close_does_not_reconnect(self):
        """Test that a provider-initiated clean close ends in disconnected."""
        link = _link()
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[conn]) as mock_open:
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)

            conn.end_cleanly()
            await wait_until(lambda: link.state is LinkState.DISCONNECTED)
            await asyncio.sleep(0.05)
            assert mock_open.await_count == 1
            assert link._reconnect_task is None

    async def test_handshake_failure_retries(self):
        """Test that failing to open counts as an unclean close."""
        link = _link()
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[OSError("refused"), InvalidURI("x", "bad"), conn]):
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            assert link.reconnect_attempts == 0
            await link.close()

    async def test_gives_up_after_max_attempts(self):
        """Reconnect attempts exhausted: terminal given_up state, no more timers."""
        link = _link(max_reconnect_attempts=2)
        with patch.object(link, "_open_connection", side_effect=OSError("unreachable")) as mock_open:
            link.connect()
            await wait_until(lambda: link.state is LinkState.GIVEN_UP)

            # Initial attempt plus two reconnects
            assert mock_open.await_count == 3
            assert link.reconnect_attempts == 2
            assert link._reconnect_task is None

            await asyncio.sleep(0.05)
            assert mock_open.await_count == 3

            link.connect()  # Refused: needs a restart
            assert link.state is LinkState.GIVEN_UP

    async def test_attempt_counter_not_reset_by_messages(self):
        """Test that only a successful handshake resets the attempt counter."""
        link = _link(max_reconnect_attempts=5, reconnect_interval=0.1)
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[OSError("down"), conn]):
            link.connect()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            assert link.reconnect_attempts == 1
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            assert link.reconnect_attempts == 0
            await link.close()

    async def test_heartbeat_sent_periodically(self):
        """Test the keepalive loop and last-heartbeat tracking."""
        link = _link(heartbeat_interval=0.01)
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[conn]):
            assert link.last_heartbeat is None
            link.connect()
            await wait_until(lambda: conn.sent.count({"action": "heartbeat"}) >= 2)
            assert link.last_heartbeat is not None
            await link.close()

    async def test_heartbeat_stops_on_disconnect(self):
        link = _link(heartbeat_interval=0.01, reconnect_interval=60.0)
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[conn]):
            link.connect()
            await wait_until(lambda: link._heartbeat_task is not None)
            conn.drop()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            assert link._heartbeat_task is None
            await link.close()

    async def test_close_when_connected(self):
        """Test that close() shuts the socket cleanly and never reconnects."""
        link = _link(heartbeat_interval=0.01)
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[conn, FakeConnection()]) as mock_open:
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)

            await link.close()
            assert conn.closed
            assert link.state is LinkState.DISCONNECTED
            assert link._heartbeat_task is None

            link.connect()
            await asyncio.sleep(0.03)
            assert mock_open.await_count == 1

    async def test_close_cancels_pending_reconnect(self):
        """Test that close() during backoff cancels the timer."""
        link = _link(reconnect_interval=60.0)
        with patch.object(link, "_open_connection", side_effect=OSError("down")) as mock_open:
            link.connect()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            timer = link._reconnect_task

            await link.close()
            assert timer is not None and timer.cancelled()
            assert link.state is LinkState.DISCONNECTED
            assert mock_open.await_count == 1

    async def test_close_during_handshake(self):
        """Test that close() aborts an in-flight connection attempt."""
        link = _link()
        started = asyncio.Event()

        async def slow_open():
            started.set()
            await asyncio.sleep(60)

        with patch.object(link, "_open_connection", side_effect=slow_open):
            link.connect()
            await started.wait()
            await link.close()
            assert link.state is LinkState.DISCONNECTED

    async def test_close_is_idempotent(self):
        """Test that close() can be called multiple times."""
        link = _link()
        await link.close()
        await link.close()
        assert link.state is LinkState.DISCONNECTED

    async def test_explicit_connect_preempts_backoff(self):
        """Test that connect() during backoff connects immediately."""
        link = _link(reconnect_interval=60.0)
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[OSError("down"), conn]):
            link.connect()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            timer = link._reconnect_task

            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            assert timer is not None and timer.cancelled()
            await link.close()


@pytest.mark.asyncio
class TestReconnectResubscribe:
    """UpstreamLink and SubscriptionRouter together."""

    async def test_resubscribes_after_unclean_drop(self):
        """AAPL and MSFT registered, link drops: both re-subscribed without client action."""
        link = _link()
        router = SubscriptionRouter(link)
        a, b = make_subscriber(), make_subscriber()
        first, second = FakeConnection(), FakeConnection()

        with patch.object(link, "_open_connection", side_effect=[first, second]):
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            await router.subscribe("AAPL", a)
            await router.subscribe("MSFT", b)
            assert first.sent == [
                {"action": "subscribe", "params": {"symbols": "AAPL"}},
                {"action": "subscribe", "params": {"symbols": "MSFT"}},
            ]

            first.drop()
            await wait_until(lambda: len(second.sent) >= 1)
            assert second.sent[0] == {"action": "subscribe", "params": {"symbols": "AAPL,MSFT"}}

            # Data flows again to the same subscribers
            second.feed(_price("MSFT", 421.0))
            await wait_until(lambda: not b._queue.empty())
            assert json.loads(queued(b)[0])["price"] == 421.0
            assert queued(a) == []
            await link.close()

    async def test_outage_changes_reflected_on_reconnect(self):
        """Resubscribed set equals the registry at reconnect time."""
        link = _link(reconnect_interval=0.1)
        router = SubscriptionRouter(link)
        a = make_subscriber()
        first, second = FakeConnection(), FakeConnection()

        with patch.object(link, "_open_connection", side_effect=[first, second]):
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            await router.subscribe("AAPL", a)
            await router.subscribe("MSFT", a)

            first.drop()
            await wait_until(lambda: link.state is LinkState.RECONNECT_SCHEDULED)
            await router.unsubscribe("AAPL", a)
            await router.subscribe("TSLA", a)
            await router.subscribe("AAPL", a)
            await router.unsubscribe("MSFT", a)

            await wait_until(lambda: len(second.sent) >= 1)
            assert second.sent == [{"action": "subscribe", "params": {"symbols": "AAPL,TSLA"}}]
            await link.close()

    async def test_first_connect_with_nothing_registered_sends_nothing(self):
        link = _link()
        SubscriptionRouter(link)
        conn = FakeConnection()
        with patch.object(link, "_open_connection", side_effect=[conn]):
            link.connect()
            await wait_until(lambda: link.state is LinkState.CONNECTED)
            await asyncio.sleep(0.02)
            assert conn.sent == []
            await link.close()

"""Tests for the gateway WebSocket connection."""

import asyncio
import json

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.protocol import State

from market_session.clients.session_connection import ConnectionState, SessionConnection
from market_session.exceptions import (
    ConnectError,
    ConnectionLostError,
    ConnectionNotOpenError,
    FrameDecodeError,
    SendError,
)
from market_session.messages import MessageType

from tests.fakes import FakeConnector


@pytest_asyncio.fixture
async def open_connection(stream_config, fake_connector):
    connection = SessionConnection(stream_config, connector=fake_connector)
    await connection.connect()
    return connection


class TestConnect:
    """Test connection establishment."""

    @pytest.mark.asyncio
    async def test_connect_negotiates_subprotocol(self, stream_config, fake_connector):
        connection = SessionConnection(stream_config, proxy_url="http://proxy:8888", connector=fake_connector)

        await connection.connect()

        call = fake_connector.calls[0]
        assert call['url'] == "wss://gateway.example.com:443/WebSocket"
        assert call['subprotocols'] == ["tr_json2"]
        assert call['proxy'] == "http://proxy:8888"
        assert connection.state is ConnectionState.OPEN
        assert connection.stats['connection_count'] == 1

    @pytest.mark.asyncio
    async def test_connect_failure(self, stream_config):
        connector = FakeConnector(error=OSError(111, "Connection refused"))
        connection = SessionConnection(stream_config, connector=connector)

        with pytest.raises(ConnectError):
            await connection.connect()

        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_connect_twice_is_rejected(self, open_connection):
        with pytest.raises(ConnectError):
            await open_connection.connect()


class TestReceive:
    """Test frame reassembly and decoding."""

    @pytest.mark.asyncio
    async def test_batched_frame_keeps_order(self, open_connection, fake_websocket):
        fake_websocket.feed_json([
            {"Type": "Ping"},
            {"ID": 1, "Type": "Refresh", "Domain": "Login"},
        ])

        messages = await open_connection.receive_message()

        assert [message.type for message in messages] == [MessageType.PING, MessageType.REFRESH]
        assert open_connection.stats['messages_received'] == 2
        assert open_connection.stats['fragmented_frames'] == 0

    @pytest.mark.asyncio
    async def test_fragmented_text_message(self, open_connection, fake_websocket):
        payload = json.dumps([{"ID": 2, "Type": "Refresh", "Fields": {"BID": 45.5}}])
        fake_websocket.feed(payload[:10], payload[10:25], payload[25:])

        messages = await open_connection.receive_message()

        assert len(messages) == 1
        assert messages[0].id == 2
        assert open_connection.stats['fragmented_frames'] == 1

    @pytest.mark.asyncio
    async def test_fragmented_binary_message(self, open_connection, fake_websocket):
        payload = json.dumps([{"Type": "Ping"}]).encode("ascii")
        fake_websocket.feed(payload[:5], payload[5:])

        messages = await open_connection.receive_message()

        assert messages[0].type is MessageType.PING

    @pytest.mark.asyncio
    async def test_malformed_frame(self, open_connection, fake_websocket):
        fake_websocket.feed("[not json")

        with pytest.raises(FrameDecodeError):
            await open_connection.receive_message()

    @pytest.mark.asyncio
    async def test_receive_requires_open_connection(self, stream_config, fake_connector):
        connection = SessionConnection(stream_config, connector=fake_connector)

        with pytest.raises(ConnectionNotOpenError):
            await connection.receive_message()

    @pytest.mark.asyncio
    async def test_abnormal_close_aborts(self, open_connection, fake_websocket):
        fake_websocket.feed_error(ConnectionClosedError(None, None))

        with pytest.raises(ConnectionLostError):
            await open_connection.receive_message()

        assert open_connection.state is ConnectionState.ABORTED
        with pytest.raises(ConnectionNotOpenError):
            await open_connection.receive_message()

    @pytest.mark.asyncio
    async def test_clean_close_by_peer(self, open_connection, fake_websocket):
        fake_websocket.feed_error(ConnectionClosedOK(None, None))

        with pytest.raises(ConnectionLostError):
            await open_connection.receive_message()

        assert open_connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_transport_close_is_observed(self, open_connection, fake_websocket):
        fake_websocket.state = State.CLOSED
        fake_websocket.close_code = 1006

        assert open_connection.state is ConnectionState.ABORTED


class TestSend:
    """Test the single-writer send path."""

    @pytest.mark.asyncio
    async def test_send_json_is_compact(self, open_connection, fake_websocket):
        await open_connection.send_json({"Type": "Pong"})

        assert fake_websocket.sent == ['{"Type":"Pong"}']
        assert open_connection.stats['messages_sent'] == 1

    @pytest.mark.asyncio
    async def test_sends_are_serialized(self, open_connection, fake_websocket):
        fake_websocket.send_delay = 0.01

        await asyncio.gather(*(open_connection.send(f'{{"n":{n}}}') for n in range(5)))

        assert fake_websocket.max_sends_in_flight == 1
        assert len(fake_websocket.sent) == 5

    @pytest.mark.asyncio
    async def test_send_after_abort(self, open_connection, fake_websocket):
        fake_websocket.feed_error(ConnectionClosedError(None, None))
        with pytest.raises(ConnectionLostError):
            await open_connection.receive_message()

        with pytest.raises(ConnectionNotOpenError):
            await open_connection.send('{"Type":"Pong"}')

    @pytest.mark.asyncio
    async def test_send_on_closed_transport(self, open_connection, fake_websocket):
        async def closed_send(text):
            raise ConnectionClosedError(None, None)

        fake_websocket.send = closed_send

        with pytest.raises(SendError):
            await open_connection.send('{"Type":"Pong"}')

        assert open_connection.state is ConnectionState.ABORTED


class TestClose:
    """Test connection teardown."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, open_connection, fake_websocket):
        await open_connection.close()
        await open_connection.close()

        assert fake_websocket.close_calls == 1
        assert open_connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_after_failed_send_closes_transport(self, open_connection, fake_websocket):
        async def broken_send(text):
            raise OSError("broken pipe")

        fake_websocket.send = broken_send

        with pytest.raises(SendError):
            await open_connection.send('{"Type":"Pong"}')
        await open_connection.close()

        assert fake_websocket.close_calls == 1
        assert fake_websocket.state is State.CLOSED
        assert open_connection.state is ConnectionState.ABORTED

    @pytest.mark.asyncio
    async def test_close_before_connect(self, stream_config, fake_connector):
        connection = SessionConnection(stream_config, connector=fake_connector)

        await connection.close()

        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_health_check(self, open_connection):
        health = await open_connection.health_check()
        assert health['status'] == 'healthy'

        await open_connection.close()
        health = await open_connection.health_check()
        assert health['status'] == 'unhealthy'
        assert health['stats']['state'] == 'closed'

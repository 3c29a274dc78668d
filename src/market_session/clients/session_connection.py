"""Persistent WebSocket connection to the streaming gateway."""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.protocol import State

from ..config.settings import StreamConfig
from ..exceptions import (
    ConnectError,
    ConnectionLostError,
    ConnectionNotOpenError,
    FrameDecodeError,
    SendError,
)
from ..messages import DecodedMessage, decode_frame, encode
from ..utils.logging import log_payload

logger = logging.getLogger(__name__)

# Close codes that end the connection without an error
CLEAN_CLOSE_CODES = frozenset({1000, 1001})


class ConnectionState(Enum):
    """Lifecycle of the single gateway connection."""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ABORTED = "aborted"


class SessionConnection:
    """
    Owns the WebSocket used for login, pings and market data.

    Only the receive loop reads from the connection. Writers share it through
    ``send``, which allows one frame in flight at a time.
    """

    def __init__(
        self,
        config: StreamConfig,
        proxy_url: Optional[str] = None,
        connector: Optional[Callable[..., Any]] = None
    ):
        self.config = config
        self.proxy_url = proxy_url
        self._connector = connector or websocket_connect
        self.websocket = None
        self._state = ConnectionState.CLOSED
        self._send_lock = asyncio.Lock()
        self._close_started = False

        self.stats = {
            'frames_received': 0,
            'messages_received': 0,
            'fragmented_frames': 0,
            'messages_sent': 0,
            'last_message_time': None,
            'connection_count': 0,
        }

    @property
    def state(self) -> ConnectionState:
        self._sync_state()
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def _sync_state(self):
        """Pick up a close the transport noticed before we did."""
        if self._state is not ConnectionState.OPEN or self.websocket is None:
            return
        if getattr(self.websocket, 'state', None) is State.CLOSED:
            close_code = getattr(self.websocket, 'close_code', None)
            self._state = ConnectionState.CLOSED if close_code in CLEAN_CLOSE_CODES else ConnectionState.ABORTED
            logger.warning(f"WebSocket closed by transport (code={close_code}), state={self._state.value}")

    async def connect(self, url: Optional[str] = None) -> None:
        """
        Open the WebSocket, negotiating the configured sub-protocol.

        Raises:
            ConnectError: If the handshake fails or the connection is already in use
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            raise ConnectError(f"Connection is already {self._state.value}")

        url = url or self.config.url
        self._state = ConnectionState.CONNECTING
        self._close_started = False
        logger.info(f"Connecting to WebSocket {url} ...")

        options: Dict[str, Any] = {
            'subprotocols': [self.config.subprotocol],
            'open_timeout': self.config.open_timeout_seconds,
            'max_size': self.config.max_message_size,
            'ping_interval': 20,
            'ping_timeout': 10,
            'close_timeout': 10,
        }
        if self.proxy_url:
            options['proxy'] = self.proxy_url

        try:
            self.websocket = await self._connector(url, **options)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._state = ConnectionState.CLOSED
            raise ConnectError(f"Failed to open a WebSocket connection to {url}: {e}") from e

        negotiated = getattr(self.websocket, 'subprotocol', None)
        if negotiated and negotiated != self.config.subprotocol:
            logger.warning(f"Gateway negotiated sub-protocol {negotiated!r}, expected {self.config.subprotocol!r}")

        self._state = ConnectionState.OPEN
        self.stats['connection_count'] += 1
        logger.info("WebSocket connection open")

    async def send(self, text: str) -> None:
        """
        Write one text frame.

        Raises:
            ConnectionNotOpenError: If the connection is not open
            SendError: If the transport rejects the frame
        """
        async with self._send_lock:
            if self.state is not ConnectionState.OPEN:
                raise ConnectionNotOpenError(f"Cannot send while connection is {self._state.value}")
            try:
                await self.websocket.send(text)
            except ConnectionClosed as e:
                self._mark_closed(e)
                raise SendError(f"Connection closed while sending: {e}") from e
            except (OSError, WebSocketException) as e:
                self._state = ConnectionState.ABORTED
                raise SendError(f"Failed to send frame: {e}") from e

            self.stats['messages_sent'] += 1

    async def send_json(self, message: Dict[str, Any]) -> None:
        log_payload(logger, "SENT", message)
        await self.send(encode(message))

    async def receive_message(self) -> List[DecodedMessage]:
        """
        Read one complete message and decode the batch it carries.

        Fragments are buffered until the final one arrives; a message that
        arrives in a single fragment is decoded without copying.

        Raises:
            ConnectionNotOpenError: If the connection is not open
            ConnectionLostError: If the connection closes while reading
            FrameDecodeError: If the message is not a JSON array of objects
        """
        if self.state is not ConnectionState.OPEN:
            raise ConnectionNotOpenError(f"Cannot receive while connection is {self._state.value}")

        first = None
        fragments = None
        try:
            async for fragment in self.websocket.recv_streaming():
                if first is None:
                    first = fragment
                    continue
                if fragments is None:
                    fragments = [first]
                fragments.append(fragment)
        except ConnectionClosed as e:
            self._mark_closed(e)
            raise ConnectionLostError(f"The WebSocket connection is closed: {e}") from e

        if first is None:
            raise FrameDecodeError("Received an empty message")

        if fragments is None:
            payload = first
        else:
            self.stats['fragmented_frames'] += 1
            payload = ("" if isinstance(first, str) else b"").join(fragments)

        messages = decode_frame(payload)

        self.stats['frames_received'] += 1
        self.stats['messages_received'] += len(messages)
        self.stats['last_message_time'] = time.time()
        log_payload(logger, "RECEIVED", [message.to_wire() for message in messages])
        return messages

    async def close(self) -> None:
        """Close the connection; later calls are no-ops."""
        if self._close_started:
            return
        self._close_started = True

        websocket = self.websocket
        if websocket is None:
            if self._state is not ConnectionState.ABORTED:
                self._state = ConnectionState.CLOSED
            return

        if self.state is ConnectionState.OPEN:
            self._state = ConnectionState.CLOSING

        # An aborted send leaves the transport open
        if getattr(websocket, 'state', None) is not State.CLOSED:
            try:
                await websocket.close()
            except (OSError, WebSocketException) as e:
                logger.warning(f"Error while closing WebSocket: {e}")

        if self._state is not ConnectionState.ABORTED:
            self._state = ConnectionState.CLOSED
        logger.info("The WebSocket connection is closed")

    def _mark_closed(self, error: ConnectionClosed):
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            self._state = ConnectionState.CLOSED
        elif isinstance(error, ConnectionClosedOK):
            self._state = ConnectionState.CLOSED
        else:
            self._state = ConnectionState.ABORTED

    def get_stats(self) -> Dict[str, Any]:
        last_message_age = None
        if self.stats['last_message_time']:
            last_message_age = time.time() - self.stats['last_message_time']

        return {
            **self.stats,
            'state': self.state.value,
            'last_message_age_seconds': last_message_age,
        }

    async def health_check(self) -> Dict[str, Any]:
        stats = self.get_stats()
        issues = []

        if stats['state'] != ConnectionState.OPEN.value:
            issues.append(f"WebSocket is {stats['state']}")

        return {
            'status': 'healthy' if not issues else 'unhealthy',
            'issues': issues,
            'stats': stats
        }

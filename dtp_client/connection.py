"""WebSocket connection handle for the DTP relay server.

A single writer task owns the outbound side of the socket. Every other part
of the client (the session driver, the input thread, playback callbacks)
submits messages through ``Connection.send``, which hands the encoded frame
to that task through a queue. Frames are therefore written one at a time and
in submission order.
"""

import asyncio
import logging
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .exceptions import TransportError
from .protocol import ClientMessage, encode

_LOGGER = logging.getLogger(__name__)

# Seconds to wait for queued frames to flush on close
CLOSE_FLUSH_TIMEOUT = 2.0


async def connect(
    url: str,
    ping_interval: Optional[float] = 30.0,
    ping_timeout: Optional[float] = 10.0,
    open_timeout: Optional[float] = 10.0,
) -> "Connection":
    """Open the WebSocket session and start its writer task.

    Pings from the server are answered by the websockets protocol layer with
    a pong carrying the same payload. The client also pings every
    ``ping_interval`` seconds and fails the connection when no pong arrives
    within ``ping_timeout``.

    Args:
        url: Full room address (e.g., "wss://dtp-server.shuttleapp.rs/room-42")
        ping_interval: Seconds between keepalive pings (None disables)
        ping_timeout: Seconds to wait for a pong (None disables)
        open_timeout: Seconds allowed for the opening handshake

    Raises:
        TransportError: If the connection cannot be established
    """
    _LOGGER.debug("Opening WebSocket: %s", url)
    try:
        websocket = await websockets.connect(
            url,
            ping_interval=ping_interval,
            ping_timeout=ping_timeout,
            open_timeout=open_timeout,
        )
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        raise TransportError(f"Failed to connect to {url}: {e}") from e

    connection = Connection(websocket, asyncio.get_running_loop())
    connection.start()
    return connection


class Connection:
    """The single WebSocket session shared by all components.

    ``send`` may be called from any thread. ``poll``, ``drain`` and ``close``
    must be awaited on the event loop that owns the connection.
    """

    def __init__(self, websocket: Any, loop: asyncio.AbstractEventLoop) -> None:
        """Wrap an open websocket.

        Args:
            websocket: Object supporting async send(str), recv() and close()
            loop: The event loop running the writer task
        """
        self._websocket = websocket
        self._loop = loop
        self._outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._error: Optional[str] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether close() was called."""
        return self._closed

    @property
    def failed(self) -> bool:
        """Whether a write failed; the session is unusable afterwards."""
        return self._error is not None

    def start(self) -> None:
        """Start the writer task. Must be called on the owning loop."""
        if self._writer_task is None:
            self._writer_task = self._loop.create_task(self._write_loop())

    def send(self, message: ClientMessage) -> None:
        """Submit one message for sending. Safe to call from any thread.

        Raises:
            TransportError: If the connection is closed or a previous write failed
        """
        if self._closed:
            raise TransportError("Connection is closed")
        if self._error is not None:
            raise TransportError(self._error)

        text = encode(message)
        # Always go through the loop's callback queue so submissions from the
        # loop thread and from other threads keep one global order.
        try:
            self._loop.call_soon_threadsafe(self._outbox.put_nowait, text)
        except RuntimeError as e:
            raise TransportError(f"Event loop is not running: {e}") from e

    async def poll(self, timeout: float) -> Optional[str]:
        """Wait up to ``timeout`` seconds for the next text frame.

        Returns:
            The frame text, or None when nothing arrived in time

        Raises:
            TransportError: If the connection was closed or a write failed
        """
        if self._error is not None:
            raise TransportError(self._error)

        try:
            frame = await asyncio.wait_for(self._websocket.recv(), timeout)
        except asyncio.TimeoutError:
            return None
        except ConnectionClosed as e:
            raise TransportError(f"Connection closed: {e}") from e

        if isinstance(frame, bytes):
            _LOGGER.debug("Ignoring binary frame (%d bytes)", len(frame))
            return None

        return frame

    async def drain(self) -> None:
        """Wait until every submitted frame was written (or dropped after a failure)."""
        # Let pending call_soon_threadsafe submissions reach the queue first
        await asyncio.sleep(0)
        await self._outbox.join()

    async def close(self) -> None:
        """Flush queued frames, stop the writer and close the session."""
        if self._closed:
            return
        self._closed = True

        if self._writer_task is not None:
            self._loop.call_soon(self._outbox.put_nowait, None)
            try:
                await asyncio.wait_for(self._writer_task, CLOSE_FLUSH_TIMEOUT)
            except asyncio.TimeoutError:
                _LOGGER.warning("Timed out flushing outgoing messages")
            self._writer_task = None

        try:
            await self._websocket.close()
        except (OSError, WebSocketException) as e:
            _LOGGER.debug("Error closing WebSocket: %s", e)

    async def _write_loop(self) -> None:
        """Drain the outbox, writing one frame at a time."""
        while True:
            text = await self._outbox.get()
            try:
                if text is None:
                    return

                if self._error is not None:
                    _LOGGER.debug("Dropping message after write failure: %s", text)
                    continue

                try:
                    await self._websocket.send(text)
                except (ConnectionClosed, OSError) as e:
                    self._error = f"Failed to send message: {e}"
                    _LOGGER.error("%s", self._error)
                    continue

                _LOGGER.debug("Sent: %s", text)
            finally:
                self._outbox.task_done()

"""DTP session driver.

This module runs a client session against the DTP relay server: it owns the
connection, polls it for inbound frames, and is the single place where the
synchronization state machine is advanced. Download completions and playback
events produced on other threads are queued and applied here, between polls.
"""

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional, TextIO, Union

from .audio_player import MpvAudioPlayer, PlaybackEvent
from .config import ClientConfig
from .connection import Connection, connect
from .downloader import DownloadCoordinator, DownloadResult, TrackDownloader
from .exceptions import DecodeError, TransportError
from .input_reader import InputReader
from .protocol import ClientMessage, decode_server_message
from .sync import SyncStateMachine

_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

Connector = Callable[..., Awaitable[Connection]]
PlayerFactory = Callable[[Callable[[PlaybackEvent], None]], MpvAudioPlayer]
SessionEvent = Union[DownloadResult, PlaybackEvent]


class ConnectionState:
    """Connection state constants."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class DtpClient:
    """Client session for one DTP room.

    Handles:
    - Connecting to ``<server_url>/<room_id>`` and announcing Ready1
    - Reading operator commands from the input stream
    - Dispatching server messages, download completions and playback events
    - Reconnecting after the connection drops
    """

    def __init__(
        self,
        config: ClientConfig,
        input_stream: Optional[TextIO] = None,
        connector: Connector = connect,
        track_downloader: Optional[TrackDownloader] = None,
        player_factory: Optional[PlayerFactory] = None,
        on_connection_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Session settings
            input_stream: Operator command stream (None disables commands)
            connector: Opens the connection (defaults to connection.connect)
            track_downloader: Blocking downloader used for every fetch
            player_factory: Builds the playback engine from an event callback
            on_connection_change: Callback when connection state changes
        """
        self._config = config
        self._input_stream = input_stream
        self._connector = connector
        self._track_downloader = track_downloader or TrackDownloader(
            audio_format=config.audio_format,
        )
        self._player_factory = player_factory or self._default_player
        self._on_connection_change = on_connection_change

        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[Connection] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional["asyncio.Queue[SessionEvent]"] = None
        self._stop_event: Optional[asyncio.Event] = None

        self._player: Optional[MpvAudioPlayer] = None
        self._downloads: Optional[DownloadCoordinator] = None
        self._machine: Optional[SyncStateMachine] = None
        self._input_reader: Optional[InputReader] = None

    @property
    def state(self) -> str:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether the client is connected to the server."""
        return self._state == ConnectionState.CONNECTED

    @property
    def machine(self) -> Optional[SyncStateMachine]:
        """The synchronization state machine (None before run())."""
        return self._machine

    async def run(self) -> int:
        """Run the session until stopped or the connection is lost for good.

        Returns:
            Process exit status: 0 after stop(), 1 on connection failure
        """
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._stop_event = asyncio.Event()

        self._player = self._player_factory(self._post_event)
        self._downloads = DownloadCoordinator(
            downloader=self._track_downloader,
            track_path=self._config.track_path,
            staging_dir=self._config.staging_dir,
            on_complete=self._events.put_nowait,
            timeout=self._config.download_timeout,
            max_workers=self._config.download_workers,
        )
        self._machine = SyncStateMachine(
            client_id=self._config.room_id,
            send=self.send,
            downloads=self._downloads,
            player=self._player,
        )

        try:
            try:
                await self._open_session()
            except TransportError as e:
                _LOGGER.error("Failed to connect: %s", e)
                self._set_state(ConnectionState.ERROR)
                return EXIT_FAILURE

            if self._input_stream is not None:
                # The session outlives the input stream; EOF only ends the reader
                self._input_reader = InputReader(self._input_stream, send=self.send)
                self._input_reader.start()

            return await self._session_loop()
        finally:
            await self._shutdown()

    def stop(self) -> None:
        """Ask the session to end. Safe to call from any thread."""
        if self._loop is None or self._stop_event is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._stop_event.set)
        except RuntimeError:
            # Loop already closed; the session is over
            pass

    def send(self, message: ClientMessage) -> None:
        """Submit a message on the current connection. Safe from any thread.

        Raises:
            TransportError: If there is no usable connection
        """
        connection = self._connection
        if connection is None:
            raise TransportError("Not connected to the DTP server")
        connection.send(message)

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def _open_session(self) -> None:
        """Connect and announce an idle client."""
        self._set_state(ConnectionState.CONNECTING)
        _LOGGER.info(
            "Connecting to DTP server at %s with ID: %s",
            self._config.server_url,
            self._config.room_id,
        )

        self._connection = await self._connector(
            self._config.room_url,
            ping_interval=self._config.ping_interval,
            ping_timeout=self._config.ping_timeout,
            open_timeout=self._config.open_timeout,
        )

        _LOGGER.info("Connected to DTP server")
        self._set_state(ConnectionState.CONNECTED)
        self._machine.start_session()

    async def _session_loop(self) -> int:
        """Run message loops, reconnecting after transport failures."""
        while not self._stop_event.is_set():
            try:
                await self._message_loop()
            except TransportError as e:
                _LOGGER.warning("Connection lost: %s", e)
                self._set_state(ConnectionState.ERROR)
                await self._close_connection()

            if self._stop_event.is_set():
                break

            if not await self._reconnect():
                if self._stop_event.is_set():
                    break
                _LOGGER.error("Disconnected from DTP server")
                return EXIT_FAILURE

        return EXIT_OK

    async def _reconnect(self) -> bool:
        """Retry connecting up to max_reconnect_attempts times."""
        attempts = self._config.max_reconnect_attempts
        delay = self._config.reconnect_delay

        for attempt in range(1, attempts + 1):
            _LOGGER.info(
                "Reconnecting in %.1f seconds (attempt %d/%d)...",
                delay,
                attempt,
                attempts,
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), delay)
                return False
            except asyncio.TimeoutError:
                pass

            try:
                await self._open_session()
                return True
            except TransportError as e:
                _LOGGER.error("Reconnect failed: %s", e)
                self._set_state(ConnectionState.ERROR)

        return False

    async def _close_connection(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is not None:
            await connection.close()

    async def _shutdown(self) -> None:
        """Stop playback and downloads and close the connection."""
        _LOGGER.debug("Shutting down...")
        if self._player is not None:
            await self._loop.run_in_executor(
                None, functools.partial(self._player.stop, wait=True)
            )
        if self._downloads is not None:
            self._downloads.shutdown()
        await self._close_connection()
        self._set_state(ConnectionState.DISCONNECTED)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def _message_loop(self) -> None:
        """Poll the connection and dispatch until stopped.

        Raises:
            TransportError: When the connection fails
        """
        while not self._stop_event.is_set():
            self._dispatch_events()

            frame = await self._connection.poll(self._config.poll_interval)
            if frame is not None:
                self._handle_text_message(frame)

    def _dispatch_events(self) -> None:
        """Apply every queued download completion and playback event."""
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                return

            if isinstance(event, DownloadResult):
                self._machine.handle_download_result(event)
            elif isinstance(event, PlaybackEvent):
                self._machine.handle_playback_event(event)
            else:
                _LOGGER.warning("Unknown session event: %r", event)

    def _handle_text_message(self, text: str) -> None:
        """Decode a text frame and feed it to the state machine."""
        try:
            message = decode_server_message(text)
        except DecodeError as e:
            _LOGGER.error("Malformed message from server: %s", e)
            return

        _LOGGER.debug("S2C { %r }", message)
        self._machine.handle_server_message(message)

    def _post_event(self, event: SessionEvent) -> None:
        """Queue an event for the dispatch loop. Safe from any thread."""
        try:
            self._loop.call_soon_threadsafe(self._events.put_nowait, event)
        except RuntimeError:
            _LOGGER.debug("Dropping %r: event loop closed", event)

    def _default_player(
        self, on_event: Callable[[PlaybackEvent], None]
    ) -> MpvAudioPlayer:
        return MpvAudioPlayer(
            on_event=on_event,
            audio_device=self._config.mpv_audio_device,
        )

    def _set_state(self, state: str) -> None:
        """Update connection state and notify callback."""
        if state != self._state:
            self._state = state
            _LOGGER.debug("DTP connection state: %s", state)
            if self._on_connection_change:
                try:
                    self._on_connection_change(state)
                except Exception as e:
                    _LOGGER.warning("Connection callback error: %s", e)

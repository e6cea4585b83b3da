"""Playback synchronization state machine.

The state machine decides, for every inbound server message, download
completion and playback event, what to tell the server and which local
action to take. It is not thread-safe: the session driver is its only caller
and feeds it events one at a time from the event loop.

Stale events are recognised by tags rather than by cancelling work:

- every download is tagged with the sequence number returned by
  ``DownloadCoordinator.fetch``; only the completion of the latest
  authoritative Play can produce ``Ready2``
- every playback run is tagged with the player's session id; events from a
  stopped session are dropped
"""

import logging
from typing import Callable, Optional

from .audio_player import MpvAudioPlayer, PlaybackEvent, PlaybackState
from .downloader import DownloadCoordinator, DownloadResult
from .exceptions import DownloadError, PlaybackError
from .protocol import (
    ClientMessage,
    ClientPlaying,
    ClientReady1,
    ClientReady2,
    ConnectNotification,
    DisconnectNotification,
    ServerMessage,
    ServerPlay,
    ServerSkip,
    ServerStart,
)

_LOGGER = logging.getLogger(__name__)


class Phase:
    """Synchronization phase constants."""
    IDLE = "idle"
    DOWNLOADING = "downloading"
    READY_TO_START = "ready_to_start"
    PLAYING_LOCALLY = "playing_locally"
    STOPPED = "stopped"


class SyncStateMachine:
    """Tracks the local phase and reacts to server, download and playback events."""

    def __init__(
        self,
        client_id: str,
        send: Callable[[ClientMessage], None],
        downloads: DownloadCoordinator,
        player: MpvAudioPlayer,
    ) -> None:
        """Initialize the state machine.

        Args:
            client_id: Our own id, used to recognise self in notifications
            send: Submits a message to the server
            downloads: Starts and finalizes track downloads
            player: Local playback engine
        """
        self._client_id = client_id
        self._send = send
        self._downloads = downloads
        self._player = player

        self._phase = Phase.IDLE
        self._active_sequence: Optional[int] = None
        self._playback_session: Optional[int] = None

    @property
    def phase(self) -> str:
        """Current synchronization phase."""
        return self._phase

    @property
    def active_sequence(self) -> Optional[int]:
        """Sequence number of the download that may still produce Ready2."""
        return self._active_sequence

    def start_session(self) -> None:
        """Announce an idle client; used at session start and after reconnecting."""
        self._halt_playback()
        self._active_sequence = None
        self._set_phase(Phase.IDLE)
        self._send(ClientReady1())

    # -------------------------------------------------------------------------
    # Server messages
    # -------------------------------------------------------------------------

    def handle_server_message(self, message: ServerMessage) -> None:
        """Apply one decoded server message."""
        if isinstance(message, ConnectNotification):
            if message.id == self._client_id:
                _LOGGER.debug("Ignoring own connect notification")
            else:
                _LOGGER.info("Client with ID: %s joined", message.id)

        elif isinstance(message, DisconnectNotification):
            if message.id == self._client_id:
                _LOGGER.debug("Ignoring own disconnect notification")
            else:
                _LOGGER.info("Client with ID: %s disconnected", message.id)

        elif isinstance(message, ServerPlay):
            self._handle_play(message.track_locator)

        elif isinstance(message, ServerStart):
            self._handle_start()

        elif isinstance(message, ServerSkip):
            self._handle_skip()

        else:
            _LOGGER.warning("Unhandled server message: %r", message)

    def _handle_play(self, track_locator: str) -> None:
        if self._halt_playback():
            _LOGGER.info("Stopped current media for new track")

        try:
            self._active_sequence = self._downloads.fetch(track_locator)
        except DownloadError as e:
            _LOGGER.error("Failed to start download: %s", e)
            self._active_sequence = None
            self._set_phase(Phase.IDLE)
            return

        self._set_phase(Phase.DOWNLOADING)

    def _handle_start(self) -> None:
        if self._phase != Phase.READY_TO_START:
            _LOGGER.warning("Ignoring Start: no track ready (phase: %s)", self._phase)
            return

        try:
            self._player.load(self._downloads.track_path)
            self._playback_session = self._player.play()
        except PlaybackError as e:
            _LOGGER.error("Error while playing media: %s", e)
            self._finish_playback()

    def _handle_skip(self) -> None:
        _LOGGER.info("Skipping media")
        self._set_phase(Phase.STOPPED)
        self._halt_playback()
        # A download still in flight becomes stale
        self._active_sequence = None
        self._set_phase(Phase.IDLE)

    # -------------------------------------------------------------------------
    # Download completions
    # -------------------------------------------------------------------------

    def handle_download_result(self, result: DownloadResult) -> None:
        """Apply a download completion, discarding superseded ones."""
        if (
            result.sequence != self._active_sequence
            or self._phase != Phase.DOWNLOADING
        ):
            _LOGGER.debug(
                "Discarding stale download #%d (%s)",
                result.sequence,
                result.track_locator,
            )
            self._downloads.discard(result)
            return

        if not result.success:
            _LOGGER.error("Failed to download audio: %s", result.error_message)
            self._downloads.discard(result)
            self._active_sequence = None
            self._set_phase(Phase.IDLE)
            return

        try:
            self._downloads.promote(result)
        except DownloadError as e:
            _LOGGER.error("Failed to download audio: %s", e)
            self._active_sequence = None
            self._set_phase(Phase.IDLE)
            return

        _LOGGER.info("Downloaded audio. Waiting for other clients")
        self._set_phase(Phase.READY_TO_START)
        self._send(ClientReady2())

    # -------------------------------------------------------------------------
    # Playback events
    # -------------------------------------------------------------------------

    def handle_playback_event(self, event: PlaybackEvent) -> None:
        """Apply a playback engine notification."""
        if event.session != self._playback_session:
            _LOGGER.debug(
                "Ignoring %s from old playback session %d", event.state, event.session
            )
            return

        if event.state == PlaybackState.PLAYING:
            if self._phase in (Phase.READY_TO_START, Phase.PLAYING_LOCALLY):
                _LOGGER.info("Playing media")
                self._set_phase(Phase.PLAYING_LOCALLY)
                self._send(ClientPlaying())

        elif event.state == PlaybackState.ENDED:
            if self._phase == Phase.PLAYING_LOCALLY:
                _LOGGER.info("Current media stopped/ended")
                self._finish_playback()

        elif event.state == PlaybackState.ERROR:
            if self._phase in (Phase.READY_TO_START, Phase.PLAYING_LOCALLY):
                _LOGGER.error("Error while playing media: %s", event.error_message)
                self._finish_playback()

        else:
            _LOGGER.warning("Unknown playback state: %s", event.state)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _finish_playback(self) -> None:
        """Tear down local playback and tell the server we are idle again."""
        self._set_phase(Phase.STOPPED)
        self._halt_playback()
        self._active_sequence = None
        self._set_phase(Phase.IDLE)
        self._send(ClientReady1())

    def _halt_playback(self) -> bool:
        self._playback_session = None
        return self._player.stop()

    def _set_phase(self, phase: str) -> None:
        if phase != self._phase:
            _LOGGER.debug("Phase: %s -> %s", self._phase, phase)
            self._phase = phase

"""Local audio playback through an mpv subprocess.

The player plays the downloaded artifact with mpv and translates the life of
the mpv process into playback events:

- ``playing`` once the process is running
- ``ended`` when mpv exits normally at the end of the track
- ``error`` when mpv cannot be started or exits with a failure status

Events are delivered to the ``on_event`` callback. ``ended``/``error`` are
raised on a watcher thread, so the callback must hand them off (the session
driver posts them onto its event queue).
"""

import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .exceptions import PlaybackError

_LOGGER = logging.getLogger(__name__)

# Check for mpv availability
MPV_AVAILABLE = shutil.which("mpv") is not None

# Seconds to wait for mpv to exit after SIGTERM before killing it
STOP_TIMEOUT = 2.0


class PlaybackState:
    """Playback state constants."""
    PLAYING = "playing"
    ENDED = "ended"
    ERROR = "error"


@dataclass
class PlaybackEvent:
    """A state change of one playback session."""
    session: int  # Incremented for every play() call
    state: str  # PlaybackState value
    error_message: Optional[str] = None


class MpvAudioPlayer:
    """Plays one local audio file at a time with mpv."""

    def __init__(
        self,
        on_event: Callable[[PlaybackEvent], None],
        audio_device: Optional[str] = None,
        mpv_path: str = "mpv",
    ) -> None:
        """Initialize the player.

        Args:
            on_event: Receives every PlaybackEvent (may run on a watcher thread)
            audio_device: Audio device in mpv format (e.g., "pulse/alsa_output.xxx")
            mpv_path: mpv executable
        """
        if mpv_path == "mpv" and not MPV_AVAILABLE:
            _LOGGER.warning("mpv not found on PATH - playback will fail")

        self._on_event = on_event
        self._audio_device = audio_device
        self._mpv_path = mpv_path

        self._media: Optional[Path] = None
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._watcher: Optional[threading.Thread] = None
        self._stop_requested: Optional[threading.Event] = None
        self._session = 0

    @property
    def session(self) -> int:
        """Id of the most recent playback session (0 before the first play)."""
        return self._session

    @property
    def is_playing(self) -> bool:
        """Whether an mpv process is running."""
        proc = self._proc
        return proc is not None and proc.poll() is None

    def load(self, path: Path) -> None:
        """Select the file the next play() starts.

        Raises:
            PlaybackError: If the file does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise PlaybackError(f"Audio file not found: {path}")
        self._media = path
        _LOGGER.debug("Loaded media: %s", path)

    def play(self) -> int:
        """Start playing the loaded file, replacing any current playback.

        Returns:
            The id of the new playback session

        Raises:
            PlaybackError: If nothing was loaded
        """
        if self._media is None:
            raise PlaybackError("No media loaded")

        self.stop()

        with self._lock:
            self._session += 1
            session = self._session

        cmd = self._build_command(self._media)
        _LOGGER.debug("Starting mpv: %s", " ".join(cmd))

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            _LOGGER.debug("Failed to start mpv: %s", e)
            self._emit(PlaybackEvent(session, PlaybackState.ERROR, f"Cannot start mpv: {e}"))
            return session

        stop_requested = threading.Event()
        watcher = threading.Thread(
            target=self._watch,
            args=(session, proc, stop_requested),
            name=f"DtpMpvWatcher-{session}",
            daemon=True,
        )

        with self._lock:
            self._proc = proc
            self._watcher = watcher
            self._stop_requested = stop_requested

        self._emit(PlaybackEvent(session, PlaybackState.PLAYING))
        watcher.start()
        return session

    def stop(self, wait: bool = False) -> bool:
        """Stop playback. No event is emitted for a session stopped here.

        mpv is sent SIGTERM and reaped on a background thread unless wait
        is set.

        Args:
            wait: Block until mpv has exited (used at shutdown)

        Returns:
            True if a running session was stopped
        """
        with self._lock:
            proc = self._proc
            watcher = self._watcher
            stop_requested = self._stop_requested
            self._proc = None
            self._watcher = None
            self._stop_requested = None

        if proc is None:
            return False

        if stop_requested is not None:
            stop_requested.set()

        was_running = proc.poll() is None
        if was_running:
            try:
                proc.terminate()
            except OSError as e:
                _LOGGER.warning("Error stopping mpv: %s", e)

        if watcher is not None:
            if wait:
                self._reap(proc, watcher)
            else:
                threading.Thread(
                    target=self._reap,
                    args=(proc, watcher),
                    name=f"{watcher.name}-reaper",
                    daemon=True,
                ).start()

        return was_running

    def _reap(self, proc: subprocess.Popen, watcher: threading.Thread) -> None:
        """Wait for a terminated mpv to exit, killing it if it lingers."""
        watcher.join(timeout=STOP_TIMEOUT)
        if watcher.is_alive():
            _LOGGER.warning("mpv did not exit, killing it")
            try:
                proc.kill()
            except OSError as e:
                _LOGGER.warning("Error killing mpv: %s", e)
            watcher.join(timeout=STOP_TIMEOUT)

    def _build_command(self, media: Path) -> List[str]:
        cmd = [
            self._mpv_path,
            "--no-video",
            "--no-input-terminal",
            "--msg-level=all=error",
        ]
        if self._audio_device:
            cmd.append(f"--audio-device={self._audio_device}")
        cmd.extend(["--", str(media)])
        return cmd

    def _watch(
        self,
        session: int,
        proc: subprocess.Popen,
        stop_requested: threading.Event,
    ) -> None:
        """Wait for mpv to exit and report how it ended."""
        _, stderr = proc.communicate()

        if stop_requested.is_set():
            _LOGGER.debug("Playback session %d stopped", session)
            return

        if proc.returncode == 0:
            self._emit(PlaybackEvent(session, PlaybackState.ENDED))
            return

        detail = (stderr or b"").decode(errors="replace").strip()
        message = f"mpv exited with status {proc.returncode}"
        if detail:
            message = f"{message}: {detail.splitlines()[-1]}"
        self._emit(PlaybackEvent(session, PlaybackState.ERROR, message))

    def _emit(self, event: PlaybackEvent) -> None:
        try:
            self._on_event(event)
        except Exception:
            _LOGGER.exception("Playback event callback error")

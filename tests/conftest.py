"""Test configuration and fixtures"""

import asyncio
import threading
from pathlib import Path
from typing import Callable, List, Optional

import pytest
from websockets.exceptions import ConnectionClosedError

from dtp_client.audio_player import PlaybackEvent, PlaybackState
from dtp_client.config import ClientConfig
from dtp_client.downloader import DownloadResult
from dtp_client.exceptions import DownloadError

_CLOSED = object()


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll predicate on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, send_delay: float = 0.0) -> None:
        self.sent: List[str] = []
        self.closed = False
        self.fail_sends = False
        self._send_delay = send_delay
        self._incoming: "asyncio.Queue[object]" = asyncio.Queue()

    def feed(self, frame) -> None:
        self._incoming.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(_CLOSED)

    async def send(self, text: str) -> None:
        if self.fail_sends or self.closed:
            raise ConnectionClosedError(None, None)
        if self._send_delay:
            await asyncio.sleep(self._send_delay)
        self.sent.append(text)

    async def recv(self):
        frame = await self._incoming.get()
        if frame is _CLOSED:
            self.closed = True
            raise ConnectionClosedError(None, None)
        return frame

    async def close(self) -> None:
        self.closed = True


class FakeDownloads:
    """Records what the state machine asks of the download coordinator."""

    def __init__(self, track_path: Path = Path("music/out.m4a")) -> None:
        self.track_path = track_path
        self.fetched: List[str] = []
        self.promoted: List[DownloadResult] = []
        self.discarded: List[DownloadResult] = []
        self.fail_fetch = False
        self.fail_promote = False

    def fetch(self, track_locator: str) -> int:
        if self.fail_fetch:
            raise DownloadError("Downloader is shut down")
        self.fetched.append(track_locator)
        return len(self.fetched)

    def promote(self, result: DownloadResult) -> Path:
        if self.fail_promote:
            raise DownloadError("disk full")
        self.promoted.append(result)
        return self.track_path

    def discard(self, result: DownloadResult) -> None:
        self.discarded.append(result)

    def success(self, sequence: int) -> DownloadResult:
        return DownloadResult(
            sequence=sequence,
            track_locator=self.fetched[sequence - 1],
            success=True,
            file_path=Path(f"music/.staging/{sequence}/out.m4a"),
        )

    def failure(self, sequence: int, message: str = "HTTP Error 403") -> DownloadResult:
        return DownloadResult(
            sequence=sequence,
            track_locator=self.fetched[sequence - 1],
            success=False,
            error_message=message,
        )


class FakePlayer:
    """Playback engine stand-in; tests emit events through on_event."""

    def __init__(self, on_event: Optional[Callable[[PlaybackEvent], None]] = None) -> None:
        self.on_event = on_event
        self.loaded: List[Path] = []
        self.session = 0
        self.playing = False
        self.stop_calls = 0
        self.play_error: Optional[Exception] = None
        self.emit_playing = False

    def load(self, path: Path) -> None:
        self.loaded.append(Path(path))

    def play(self) -> int:
        if self.play_error is not None:
            raise self.play_error
        self.session += 1
        self.playing = True
        if self.emit_playing and self.on_event is not None:
            self.on_event(PlaybackEvent(self.session, PlaybackState.PLAYING))
        return self.session

    def stop(self, wait: bool = False) -> bool:
        self.stop_calls += 1
        was_playing = self.playing
        self.playing = False
        return was_playing

    def emit(self, state: str, error_message: Optional[str] = None) -> None:
        self.on_event(PlaybackEvent(self.session, state, error_message))


class FakeTrackDownloader:
    """Writes a small file instead of running yt-dlp."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.gate: Optional[threading.Event] = None
        self.error: Optional[str] = None
        self._lock = threading.Lock()

    def download(self, track_locator: str, destination: Path) -> Path:
        with self._lock:
            self.calls.append(track_locator)
            gate = self.gate
        if gate is not None:
            gate.wait(5.0)
        if self.error is not None:
            raise DownloadError(self.error)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(track_locator.encode())
        return destination


@pytest.fixture
def sent():
    """Messages submitted by the state machine"""
    return []


@pytest.fixture
def fake_downloads():
    return FakeDownloads()


@pytest.fixture
def fake_player():
    return FakePlayer()


@pytest.fixture
def config(tmp_path):
    """Fast-polling config writing into a temporary music directory"""
    return ClientConfig(
        room_id="room-42",
        server_url="ws://relay.test",
        music_dir=str(tmp_path / "music"),
        poll_interval=0.005,
        reconnect_delay=0.0,
        max_reconnect_attempts=0,
        download_timeout=5.0,
    )

"""Audio downloading for DTP tracks.

``TrackDownloader`` is a blocking wrapper around yt-dlp that fetches the audio
stream of one track locator into a file. ``DownloadCoordinator`` runs those
downloads on worker threads so the session driver keeps servicing the socket,
tags every download with a sequence number, and reports each completion to
an event sink on the event loop.

There is exactly one local artifact slot. A download never writes the slot
directly: it stages into ``<staging_dir>/<sequence>/`` and the state machine
promotes the staged file only when the completion belongs to the latest
request. A superseded download that is still running can therefore never
overwrite the current track.
"""

import asyncio
import logging
import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set

import yt_dlp

from .exceptions import DownloadError

_LOGGER = logging.getLogger(__name__)


@dataclass
class DownloadResult:
    """Completion of one download request."""

    sequence: int
    track_locator: str
    success: bool
    file_path: Optional[Path] = None
    error_message: Optional[str] = None


class _YtDlpLogger:
    """Routes yt-dlp output to our logger.

    Failures surface as exceptions from ``YoutubeDL.download``, so yt-dlp's own
    error lines are only useful when debugging.
    """

    def debug(self, msg: str) -> None:
        _LOGGER.debug("yt-dlp: %s", msg)

    def info(self, msg: str) -> None:
        _LOGGER.debug("yt-dlp: %s", msg)

    def warning(self, msg: str) -> None:
        _LOGGER.debug("yt-dlp warning: %s", msg)

    def error(self, msg: str) -> None:
        _LOGGER.debug("yt-dlp error: %s", msg)


class TrackDownloader:
    """Fetches the audio of a track locator with yt-dlp."""

    def __init__(
        self,
        audio_format: str = "140",
        socket_timeout: float = 30.0,
        retries: int = 3,
    ) -> None:
        """Initialize the downloader.

        Args:
            audio_format: yt-dlp format selector (140 is the m4a audio stream)
            socket_timeout: Network timeout for yt-dlp in seconds
            retries: Download and fragment retries
        """
        self._audio_format = audio_format
        self._socket_timeout = socket_timeout
        self._retries = retries

    def _get_ydl_options(self, destination: Path) -> Dict[str, Any]:
        """Build yt-dlp options writing a single audio file to destination."""
        return {
            "format": self._audio_format,
            "outtmpl": str(destination),
            "noplaylist": True,
            "overwrites": True,
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "logger": _YtDlpLogger(),
            "progress_hooks": [self._progress_hook],
            "socket_timeout": self._socket_timeout,
            "retries": self._retries,
            "fragment_retries": self._retries,
        }

    @staticmethod
    def _progress_hook(status: Dict[str, Any]) -> None:
        if status.get("status") == "finished":
            _LOGGER.debug(
                "yt-dlp finished %s (%s bytes)",
                status.get("filename"),
                status.get("total_bytes") or status.get("downloaded_bytes"),
            )

    def download(self, track_locator: str, destination: Path) -> Path:
        """Download audio for track_locator into destination (blocking).

        Returns:
            The path of the downloaded file

        Raises:
            DownloadError: If yt-dlp fails or produced no file
        """
        destination.parent.mkdir(parents=True, exist_ok=True)

        try:
            with yt_dlp.YoutubeDL(self._get_ydl_options(destination)) as ydl:
                ydl.download([track_locator])
        except yt_dlp.utils.YoutubeDLError as e:
            raise DownloadError(str(e)) from e
        except OSError as e:
            raise DownloadError(f"Cannot write {destination}: {e}") from e

        if not destination.is_file():
            raise DownloadError("Downloaded file not found")

        return destination


class DownloadCoordinator:
    """Runs tagged downloads in the background and reports their completion.

    ``fetch`` and ``promote``/``discard`` must be called on the event loop;
    the completion sink is always invoked on the event loop as well.
    """

    def __init__(
        self,
        downloader: TrackDownloader,
        track_path: Path,
        staging_dir: Path,
        on_complete: Callable[[DownloadResult], None],
        timeout: float = 300.0,
        max_workers: int = 4,
    ) -> None:
        """Initialize the coordinator.

        Args:
            downloader: Blocking downloader run on worker threads
            track_path: The fixed local artifact slot
            staging_dir: Parent of the per-download staging directories
            on_complete: Receives every DownloadResult, including stale ones
            timeout: Seconds a download may run once a worker starts it
            max_workers: Worker threads; superseded downloads keep theirs
                until yt-dlp returns
        """
        self._downloader = downloader
        self._track_path = track_path
        self._staging_dir = staging_dir
        self._on_complete = on_complete
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="DtpDownload",
        )
        self._sequence = 0
        self._tasks: Set[asyncio.Task] = set()
        self._shut_down = False

    @property
    def track_path(self) -> Path:
        """The fixed local artifact slot."""
        return self._track_path

    @property
    def sequence(self) -> int:
        """Sequence number of the most recently started download."""
        return self._sequence

    def fetch(self, track_locator: str) -> int:
        """Start downloading track_locator in the background.

        Removes the previous artifact first; there is no per-track cache.

        Returns:
            The sequence number tagging this download

        Raises:
            DownloadError: If the coordinator was shut down
        """
        if self._shut_down:
            raise DownloadError("Downloader is shut down")

        self._sequence += 1
        sequence = self._sequence
        self._remove_artifact()

        task = asyncio.get_running_loop().create_task(
            self._run(sequence, track_locator)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return sequence

    def promote(self, result: DownloadResult) -> Path:
        """Move a successful staged download into the artifact slot.

        Raises:
            DownloadError: If the staged file cannot be moved
        """
        if not result.success or result.file_path is None:
            raise DownloadError(f"Download {result.sequence} has no file to promote")

        try:
            self._track_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(result.file_path, self._track_path)
        except OSError as e:
            raise DownloadError(f"Cannot store downloaded audio: {e}") from e
        finally:
            self._remove_staging(result.sequence)

        return self._track_path

    def discard(self, result: DownloadResult) -> None:
        """Delete whatever a download left in its staging directory."""
        self._remove_staging(result.sequence)

    def shutdown(self) -> None:
        """Stop accepting downloads and remove the staging area.

        Running yt-dlp calls cannot be interrupted; their threads finish on
        their own and their results are dropped.
        """
        if self._shut_down:
            return
        self._shut_down = True

        for task in self._tasks:
            task.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)
        shutil.rmtree(self._staging_dir, ignore_errors=True)

    async def _run(self, sequence: int, track_locator: str) -> None:
        """Run one download on a worker thread and report its completion."""
        loop = asyncio.get_running_loop()
        destination = self._staging_dir / str(sequence) / self._track_path.name

        _LOGGER.info("Downloading audio: %s", track_locator)
        started = asyncio.Event()

        def download() -> Path:
            loop.call_soon_threadsafe(started.set)
            return self._downloader.download(track_locator, destination)

        future = loop.run_in_executor(self._executor, download)

        # The timeout runs from the moment a worker picks the job up
        await started.wait()

        try:
            path = await asyncio.wait_for(future, self._timeout)
        except asyncio.TimeoutError:
            result = DownloadResult(
                sequence=sequence,
                track_locator=track_locator,
                success=False,
                error_message=f"Timed out after {self._timeout:.0f} seconds",
            )
        except DownloadError as e:
            result = DownloadResult(
                sequence=sequence,
                track_locator=track_locator,
                success=False,
                error_message=str(e),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The state machine waits for a completion; never lose one
            _LOGGER.exception("Unexpected error downloading %s", track_locator)
            result = DownloadResult(
                sequence=sequence,
                track_locator=track_locator,
                success=False,
                error_message=str(e),
            )
        else:
            result = DownloadResult(
                sequence=sequence,
                track_locator=track_locator,
                success=True,
                file_path=path,
            )

        self._on_complete(result)

    def _remove_artifact(self) -> None:
        try:
            self._track_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            _LOGGER.warning("Could not remove previous audio %s: %s", self._track_path, e)

    def _remove_staging(self, sequence: int) -> None:
        shutil.rmtree(self._staging_dir / str(sequence), ignore_errors=True)

"""Tests for the yt-dlp downloader and the download coordinator"""

import asyncio
import threading

import pytest
import yt_dlp

from dtp_client import downloader as downloader_module
from dtp_client.downloader import DownloadCoordinator, DownloadResult, TrackDownloader
from dtp_client.exceptions import DownloadError

from .conftest import FakeTrackDownloader, wait_until


class FakeYoutubeDL:
    """Records options and writes the output template path."""

    instances = []
    error = None
    write_file = True

    def __init__(self, params):
        self.params = params
        self.urls = []
        FakeYoutubeDL.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def download(self, urls):
        self.urls.extend(urls)
        if FakeYoutubeDL.error is not None:
            raise FakeYoutubeDL.error
        if FakeYoutubeDL.write_file:
            with open(self.params["outtmpl"], "wb") as f:
                f.write(b"audio")
        return 0


@pytest.fixture
def fake_ytdl(monkeypatch):
    FakeYoutubeDL.instances = []
    FakeYoutubeDL.error = None
    FakeYoutubeDL.write_file = True
    monkeypatch.setattr(downloader_module.yt_dlp, "YoutubeDL", FakeYoutubeDL)
    return FakeYoutubeDL


class TestTrackDownloader:

    def test_downloads_audio_format(self, fake_ytdl, tmp_path):
        destination = tmp_path / "staging" / "1" / "out.m4a"
        path = TrackDownloader(audio_format="140").download("abc", destination)

        assert path == destination
        assert destination.read_bytes() == b"audio"

        ydl = fake_ytdl.instances[0]
        assert ydl.urls == ["abc"]
        assert ydl.params["format"] == "140"
        assert ydl.params["outtmpl"] == str(destination)
        assert ydl.params["noplaylist"] is True

    def test_yt_dlp_error_becomes_download_error(self, fake_ytdl, tmp_path):
        fake_ytdl.error = yt_dlp.utils.DownloadError("ERROR: Video unavailable")

        with pytest.raises(DownloadError, match="Video unavailable"):
            TrackDownloader().download("abc", tmp_path / "out.m4a")

    def test_missing_output_file(self, fake_ytdl, tmp_path):
        fake_ytdl.write_file = False

        with pytest.raises(DownloadError, match="not found"):
            TrackDownloader().download("abc", tmp_path / "out.m4a")


@pytest.fixture
def results():
    return []


@pytest.fixture
def track_downloader():
    return FakeTrackDownloader()


@pytest.fixture
def coordinator(tmp_path, results, track_downloader):
    coordinator = DownloadCoordinator(
        downloader=track_downloader,
        track_path=tmp_path / "music" / "out.m4a",
        staging_dir=tmp_path / "music" / ".staging",
        on_complete=results.append,
        timeout=5.0,
    )
    yield coordinator
    coordinator.shutdown()


class TestDownloadCoordinator:

    @pytest.mark.asyncio
    async def test_fetch_reports_staged_file(self, coordinator, results):
        sequence = coordinator.fetch("abc")
        assert sequence == 1

        await wait_until(lambda: results)
        result = results[0]
        assert result.success
        assert result.sequence == 1
        assert result.track_locator == "abc"
        assert result.file_path.read_bytes() == b"abc"
        assert result.file_path != coordinator.track_path

    @pytest.mark.asyncio
    async def test_sequence_numbers_increase(self, coordinator, results):
        assert [coordinator.fetch(t) for t in ("a", "b", "c")] == [1, 2, 3]
        assert coordinator.sequence == 3

        await wait_until(lambda: len(results) == 3)
        assert sorted(r.sequence for r in results) == [1, 2, 3]
        # Each download stages into its own directory
        assert len({r.file_path for r in results}) == 3

    @pytest.mark.asyncio
    async def test_promote_moves_into_slot(self, coordinator, results):
        coordinator.fetch("abc")
        await wait_until(lambda: results)

        path = coordinator.promote(results[0])

        assert path == coordinator.track_path
        assert path.read_bytes() == b"abc"
        assert not results[0].file_path.exists()

    @pytest.mark.asyncio
    async def test_fetch_removes_previous_artifact(self, coordinator, results):
        coordinator.fetch("abc")
        await wait_until(lambda: results)
        coordinator.promote(results[0])

        coordinator.fetch("xyz")
        assert not coordinator.track_path.exists()
        await wait_until(lambda: len(results) == 2)

    @pytest.mark.asyncio
    async def test_discard_removes_staged_file(self, coordinator, results):
        coordinator.fetch("abc")
        await wait_until(lambda: results)

        coordinator.discard(results[0])
        assert not results[0].file_path.exists()
        assert not coordinator.track_path.exists()

    @pytest.mark.asyncio
    async def test_stale_download_cannot_clobber_slot(
        self, coordinator, results, track_downloader
    ):
        gate = threading.Event()
        track_downloader.gate = gate
        coordinator.fetch("old")
        await wait_until(lambda: track_downloader.calls == ["old"])

        track_downloader.gate = None
        coordinator.fetch("new")
        await wait_until(lambda: len(results) == 1)
        coordinator.promote(results[0])
        assert coordinator.track_path.read_bytes() == b"new"

        # Let the superseded download finish late
        gate.set()
        await wait_until(lambda: len(results) == 2)

        assert results[1].track_locator == "old"
        assert coordinator.track_path.read_bytes() == b"new"

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, coordinator, results, track_downloader):
        track_downloader.error = "HTTP Error 403: Forbidden"
        coordinator.fetch("abc")

        await wait_until(lambda: results)
        assert not results[0].success
        assert results[0].error_message == "HTTP Error 403: Forbidden"
        with pytest.raises(DownloadError):
            coordinator.promote(results[0])

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self, tmp_path, results):
        slow = FakeTrackDownloader()
        slow.gate = threading.Event()
        coordinator = DownloadCoordinator(
            downloader=slow,
            track_path=tmp_path / "out.m4a",
            staging_dir=tmp_path / ".staging",
            on_complete=results.append,
            timeout=0.05,
        )

        coordinator.fetch("abc")
        await wait_until(lambda: results)
        slow.gate.set()
        coordinator.shutdown()

        assert not results[0].success
        assert "Timed out" in results[0].error_message

    @pytest.mark.asyncio
    async def test_unexpected_error_still_completes(self, tmp_path, results):
        class Broken:
            def download(self, track_locator, destination):
                raise RuntimeError("boom")

        coordinator = DownloadCoordinator(
            downloader=Broken(),
            track_path=tmp_path / "out.m4a",
            staging_dir=tmp_path / ".staging",
            on_complete=results.append,
        )
        coordinator.fetch("abc")
        await wait_until(lambda: results)
        coordinator.shutdown()

        assert results == [
            DownloadResult(sequence=1, track_locator="abc", success=False, error_message="boom")
        ]

    @pytest.mark.asyncio
    async def test_fetch_after_shutdown_raises(self, coordinator):
        coordinator.shutdown()
        with pytest.raises(DownloadError):
            coordinator.fetch("abc")

    @pytest.mark.asyncio
    async def test_shutdown_removes_staging(self, coordinator, results, tmp_path):
        coordinator.fetch("abc")
        await wait_until(lambda: results)

        coordinator.shutdown()
        assert not (tmp_path / "music" / ".staging").exists()

    @pytest.mark.asyncio
    async def test_timeout_excludes_wait_for_free_worker(self, tmp_path, results):
        track_downloader = FakeTrackDownloader()
        gate = threading.Event()
        track_downloader.gate = gate
        coordinator = DownloadCoordinator(
            downloader=track_downloader,
            track_path=tmp_path / "out.m4a",
            staging_dir=tmp_path / ".staging",
            on_complete=results.append,
            timeout=0.2,
            max_workers=1,
        )

        coordinator.fetch("old")
        await wait_until(lambda: track_downloader.calls == ["old"])
        track_downloader.gate = None
        coordinator.fetch("new")

        # "new" waits for the only worker longer than the timeout
        await asyncio.sleep(0.35)
        assert [r.sequence for r in results] == [1]
        gate.set()

        await wait_until(lambda: len(results) == 2)
        coordinator.shutdown()

        old, new = results
        assert not old.success
        assert "Timed out" in old.error_message
        assert new.success
        assert new.track_locator == "new"

"""Configuration for the DTP client."""

import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

from .protocol import DEFAULT_SERVER_URL

_LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Configuration Dataclass
# -----------------------------------------------------------------------------


@dataclass
class ClientConfig:
    """Settings for one client session."""

    room_id: str
    server_url: str = DEFAULT_SERVER_URL

    # Local artifact slot: <music_dir>/<track_filename>
    music_dir: str = "./music"
    track_filename: str = "out.m4a"

    # yt-dlp format selector (140 = m4a audio stream)
    audio_format: str = "140"
    download_timeout: float = 300.0
    download_workers: int = 4

    # Session driver
    poll_interval: float = 0.01
    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 5

    # WebSocket keepalive
    ping_interval: float = 30.0
    ping_timeout: float = 10.0
    open_timeout: float = 10.0

    mpv_audio_device: Optional[str] = None
    debug: bool = False

    def __post_init__(self) -> None:
        if not self.room_id:
            raise ValueError("room_id must not be empty")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.download_timeout <= 0:
            raise ValueError("download_timeout must be positive")
        if self.download_workers < 1:
            raise ValueError("download_workers must be at least 1")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must not be negative")
        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay must not be negative")

    @property
    def room_url(self) -> str:
        """Server address with the room id appended as a path segment."""
        return f"{self.server_url.rstrip('/')}/{quote(self.room_id, safe='')}"

    @property
    def track_path(self) -> Path:
        """Fixed path of the most recently fetched audio artifact."""
        return Path(self.music_dir) / self.track_filename

    @property
    def staging_dir(self) -> Path:
        """Directory holding per-download staging folders."""
        return Path(self.music_dir) / ".staging"

    def with_overrides(self, **overrides: Any) -> "ClientConfig":
        """Return a copy with every non-None override applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


# -----------------------------------------------------------------------------
# Helper Function
# -----------------------------------------------------------------------------


def load_config_from_json(config_path: Path, room_id: str) -> ClientConfig:
    """Loads configuration from a JSON file.

    The file holds a flat object whose keys are ClientConfig fields. The room
    id always comes from the command line.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_data: Dict[str, Any] = json.load(f)
    except FileNotFoundError:
        _LOGGER.critical("Configuration file not found at: %s", config_path)
        raise
    except json.JSONDecodeError as e:
        _LOGGER.critical("Error parsing configuration file: %s", e)
        raise

    if not isinstance(raw_data, dict):
        raise ValueError("Configuration file must contain a JSON object")

    known = {f.name for f in fields(ClientConfig)} - {"room_id"}
    unknown = set(raw_data) - known
    if unknown:
        raise ValueError(
            f"Unknown configuration keys: {', '.join(sorted(unknown))}"
        )

    return ClientConfig(room_id=room_id, **raw_data)

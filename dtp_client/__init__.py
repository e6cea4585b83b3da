"""DTP client for synchronized group listening.

This package implements a client for a DTP relay server: every client in a
room downloads the same track and starts playing it at the same moment.

Example usage:
    from dtp_client import ClientConfig, DtpClient

    client = DtpClient(ClientConfig(room_id="living-room"), input_stream=sys.stdin)
    exit_status = await client.run()
"""

__version__ = "0.1.0"

from .audio_player import MpvAudioPlayer, PlaybackEvent, PlaybackState
from .client import ConnectionState, DtpClient
from .config import ClientConfig, load_config_from_json
from .connection import Connection, connect
from .downloader import DownloadCoordinator, DownloadResult, TrackDownloader
from .exceptions import (
    DecodeError,
    DownloadError,
    DtpError,
    PlaybackError,
    TransportError,
    UnknownCommandError,
)
from .input_reader import InputReader, parse_command
from .protocol import (
    ClientPlay,
    ClientPlaying,
    ClientReady1,
    ClientReady2,
    ClientSkip,
    ConnectNotification,
    DEFAULT_SERVER_URL,
    DisconnectNotification,
    ServerPlay,
    ServerSkip,
    ServerStart,
    decode_client_message,
    decode_server_message,
    encode,
)
from .sync import Phase, SyncStateMachine

__all__ = [
    # Main client
    "DtpClient",
    "ConnectionState",
    "ClientConfig",
    "load_config_from_json",
    # Components
    "Connection",
    "connect",
    "DownloadCoordinator",
    "DownloadResult",
    "TrackDownloader",
    "MpvAudioPlayer",
    "PlaybackEvent",
    "PlaybackState",
    "InputReader",
    "parse_command",
    "SyncStateMachine",
    "Phase",
    # Protocol types
    "ClientReady1",
    "ClientReady2",
    "ClientPlay",
    "ClientSkip",
    "ClientPlaying",
    "ConnectNotification",
    "DisconnectNotification",
    "ServerPlay",
    "ServerStart",
    "ServerSkip",
    "encode",
    "decode_server_message",
    "decode_client_message",
    # Errors
    "DtpError",
    "TransportError",
    "DecodeError",
    "DownloadError",
    "PlaybackError",
    "UnknownCommandError",
    # Constants
    "DEFAULT_SERVER_URL",
]

"""DTP message types and serialization.

This module implements the message vocabulary exchanged with the DTP relay
server over WebSocket text frames.

Wire format:
- A message without payload is the JSON string of its tag: ``"Ready1"``
- A message with payload is an object mapping the tag to its fields:
  ``{"Play": {"yt_link": "https://..."}}``
"""

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Tuple, Type, Union

from .exceptions import DecodeError

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

DEFAULT_SERVER_URL = "wss://dtp-server.shuttleapp.rs"

# Field carrying the track locator inside Play payloads
TRACK_LOCATOR_FIELD = "yt_link"

# Field carrying the peer id inside connect/disconnect notifications
PEER_ID_FIELD = "id"


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _require_str(payload: Optional[Dict[str, Any]], key: str, tag: str) -> str:
    """Return a required string field of a payload or raise DecodeError."""
    if payload is None:
        raise DecodeError(f"{tag} requires a payload")
    if key not in payload:
        raise DecodeError(f"{tag} payload is missing field '{key}'")
    value = payload[key]
    if not isinstance(value, str):
        raise DecodeError(
            f"{tag} field '{key}' must be a string, got {type(value).__name__}"
        )
    return value


class _BareMessage:
    """Mixin for messages that carry no payload and serialize as their tag."""

    tag: ClassVar[str] = ""

    def to_json(self) -> str:
        """Serialize to JSON for WebSocket text message."""
        return json.dumps(self.tag)

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> Any:
        """Build the message from a decoded payload (must be absent)."""
        if payload is not None:
            raise DecodeError(f"{cls.tag} does not take a payload")
        return cls()


# -----------------------------------------------------------------------------
# Client Messages (Client -> Server)
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientReady1(_BareMessage):
    """Ready1: the client is idle with nothing loaded."""

    tag: ClassVar[str] = "Ready1"


@dataclass(frozen=True)
class ClientReady2(_BareMessage):
    """Ready2: the requested track is downloaded and ready to start."""

    tag: ClassVar[str] = "Ready2"


@dataclass(frozen=True)
class ClientPlay:
    """Play request: asks the server to have the group fetch a track."""

    track_locator: str

    tag: ClassVar[str] = "Play"

    def to_json(self) -> str:
        """Serialize to JSON for WebSocket text message."""
        return json.dumps({self.tag: {TRACK_LOCATOR_FIELD: self.track_locator}})

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "ClientPlay":
        """Parse from JSON payload dictionary."""
        return cls(track_locator=_require_str(payload, TRACK_LOCATOR_FIELD, cls.tag))


@dataclass(frozen=True)
class ClientSkip(_BareMessage):
    """Skip request: asks the server to abort the current track for everyone."""

    tag: ClassVar[str] = "Skip"


@dataclass(frozen=True)
class ClientPlaying(_BareMessage):
    """Playing: local playback has started (informational)."""

    tag: ClassVar[str] = "Playing"


# -----------------------------------------------------------------------------
# Server Messages (Server -> Client)
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectNotification:
    """A peer joined the room."""

    id: str

    tag: ClassVar[str] = "ConnectNotification"

    def to_json(self) -> str:
        """Serialize to JSON for WebSocket text message."""
        return json.dumps({self.tag: {PEER_ID_FIELD: self.id}})

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "ConnectNotification":
        """Parse from JSON payload dictionary."""
        return cls(id=_require_str(payload, PEER_ID_FIELD, cls.tag))


@dataclass(frozen=True)
class DisconnectNotification:
    """A peer left the room."""

    id: str

    tag: ClassVar[str] = "DisconnectNotification"

    def to_json(self) -> str:
        """Serialize to JSON for WebSocket text message."""
        return json.dumps({self.tag: {PEER_ID_FIELD: self.id}})

    @classmethod
    def from_payload(
        cls, payload: Optional[Dict[str, Any]]
    ) -> "DisconnectNotification":
        """Parse from JSON payload dictionary."""
        return cls(id=_require_str(payload, PEER_ID_FIELD, cls.tag))


@dataclass(frozen=True)
class ServerPlay:
    """Authoritative Play: every client must fetch this track."""

    track_locator: str

    tag: ClassVar[str] = "Play"

    def to_json(self) -> str:
        """Serialize to JSON for WebSocket text message."""
        return json.dumps({self.tag: {TRACK_LOCATOR_FIELD: self.track_locator}})

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "ServerPlay":
        """Parse from JSON payload dictionary."""
        return cls(track_locator=_require_str(payload, TRACK_LOCATOR_FIELD, cls.tag))


@dataclass(frozen=True)
class ServerStart(_BareMessage):
    """Authoritative Start: every client begins local playback now."""

    tag: ClassVar[str] = "Start"


@dataclass(frozen=True)
class ServerSkip(_BareMessage):
    """Authoritative Skip: stop the current track."""

    tag: ClassVar[str] = "Skip"


ClientMessage = Union[ClientReady1, ClientReady2, ClientPlay, ClientSkip, ClientPlaying]
ServerMessage = Union[
    ConnectNotification, DisconnectNotification, ServerPlay, ServerStart, ServerSkip
]
Message = Union[ClientMessage, ServerMessage]

_CLIENT_MESSAGES: Dict[str, Type[Any]] = {
    cls.tag: cls
    for cls in (ClientReady1, ClientReady2, ClientPlay, ClientSkip, ClientPlaying)
}

_SERVER_MESSAGES: Dict[str, Type[Any]] = {
    cls.tag: cls
    for cls in (
        ConnectNotification,
        DisconnectNotification,
        ServerPlay,
        ServerStart,
        ServerSkip,
    )
}


# -----------------------------------------------------------------------------
# JSON Message Parsing
# -----------------------------------------------------------------------------


def split_tagged_union(text: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Split a JSON text frame into its tag and optional payload.

    Args:
        text: JSON string

    Returns:
        Tuple of (tag, payload_dict or None)

    Raises:
        DecodeError: If the frame is not a tagged union value
    """
    try:
        raw = json.loads(text)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Invalid JSON: {e}") from e

    if isinstance(raw, str):
        return raw, None

    if isinstance(raw, dict):
        if len(raw) != 1:
            raise DecodeError(
                f"Expected exactly one message tag, got {len(raw)}"
            )
        ((tag, payload),) = raw.items()
        if not isinstance(payload, dict):
            raise DecodeError(f"{tag} payload must be an object")
        return tag, payload

    raise DecodeError(f"Expected a string or an object, got {type(raw).__name__}")


def _decode(text: str, registry: Dict[str, Type[Any]], direction: str) -> Any:
    tag, payload = split_tagged_union(text)
    cls = registry.get(tag)
    if cls is None:
        raise DecodeError(f"Unknown {direction} message tag: {tag!r}")
    return cls.from_payload(payload)


def decode_server_message(text: str) -> ServerMessage:
    """Parse a server -> client text frame.

    Raises:
        DecodeError: On malformed JSON, unknown tags or missing fields
    """
    return _decode(text, _SERVER_MESSAGES, "server")


def decode_client_message(text: str) -> ClientMessage:
    """Parse a client -> server text frame.

    Raises:
        DecodeError: On malformed JSON, unknown tags or missing fields
    """
    return _decode(text, _CLIENT_MESSAGES, "client")


def encode(message: Message) -> str:
    """Serialize any protocol message to its wire text."""
    return message.to_json()

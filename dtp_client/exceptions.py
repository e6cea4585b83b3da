"""Exception types raised by the DTP client."""


class DtpError(Exception):
    """Base class for all DTP client errors."""


class TransportError(DtpError):
    """The WebSocket connection could not be opened, was closed, or a send failed."""


class DecodeError(DtpError, ValueError):
    """An inbound text frame is not a valid protocol message."""


class DownloadError(DtpError):
    """Fetching audio for a track locator failed."""


class PlaybackError(DtpError):
    """The playback engine could not load or play the local artifact."""


class UnknownCommandError(DtpError, ValueError):
    """A line of operator input is not a recognised command."""

"""Operator commands from standard input.

Commands:
- ``play <locator>``: ask the server to play a track for the whole room
- ``skip``: ask the server to skip the current track
"""

import logging
import threading
from typing import Callable, Optional, TextIO

from .exceptions import TransportError, UnknownCommandError
from .protocol import ClientMessage, ClientPlay, ClientSkip

_LOGGER = logging.getLogger(__name__)

PLAY_COMMAND = "play"
SKIP_COMMAND = "skip"


def parse_command(line: str) -> ClientMessage:
    """Translate one line of operator input into a client message.

    Raises:
        UnknownCommandError: If the line is not a recognised command
    """
    text = line.strip()

    if text == SKIP_COMMAND:
        return ClientSkip()

    command, _, argument = text.partition(" ")
    if command == PLAY_COMMAND:
        locator = argument.strip()
        if locator:
            return ClientPlay(track_locator=locator)

    raise UnknownCommandError(f"Unrecognised input: {text!r}")


class InputReader:
    """Reads commands on a daemon thread and sends them to the server."""

    def __init__(
        self,
        stream: TextIO,
        send: Callable[[ClientMessage], None],
        on_eof: Optional[Callable[[], None]] = None,
    ) -> None:
        """Initialize the reader.

        Args:
            stream: Line-oriented input (usually sys.stdin)
            send: Submits a message to the server; must be thread-safe
            on_eof: Called once when the stream is exhausted
        """
        self._stream = stream
        self._send = send
        self._on_eof = on_eof
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        """Whether the reader thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the reader thread (no-op if already running)."""
        if self.is_running:
            return

        self._thread = threading.Thread(
            target=self._read_loop,
            name="DtpInputReader",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the reader thread to finish."""
        if self._thread is not None:
            self._thread.join(timeout)

    def _read_loop(self) -> None:
        for line in iter(self._stream.readline, ""):
            if not line.strip():
                continue

            try:
                message = parse_command(line)
            except UnknownCommandError:
                _LOGGER.error("Unrecognised input")
                continue

            try:
                self._send(message)
            except TransportError as e:
                _LOGGER.error("Could not send command: %s", e)

        _LOGGER.debug("Input stream closed")
        if self._on_eof is not None:
            self._on_eof()

"""Error taxonomy for SSE decoding and encoding."""

from __future__ import annotations


class SSEError(Exception):
    """Base class for all errors raised by asyncsse."""


class InvalidEncoding(SSEError, ValueError):
    """Raised when a line of the event stream is not valid UTF-8.

    Terminal for the decode operation that raised it.
    """

    def __init__(self, line: bytes, reason: str = "") -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"stream did not contain valid UTF-8: {reason or line[:64]!r}")


class Disconnected(SSEError, ConnectionError):
    """Raised by a sender once its paired receiver or the sender itself is released."""

    def __init__(self) -> None:
        super().__init__("sse disconnected")


class HandshakeError(SSEError):
    """Raised when the event stream headers cannot be set."""

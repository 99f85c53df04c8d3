"""Mark an HTTP response as an SSE event stream."""

from __future__ import annotations

from collections.abc import MutableMapping

from .errors import HandshakeError

EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
}


def upgrade(headers: MutableMapping[str, str]) -> None:
    """Set the event stream headers on a mutable header collection.

    Raises HandshakeError if the collection rejects the insertion, e.g. a
    read-only ``CIMultiDictProxy``.
    """
    for name, value in EVENT_STREAM_HEADERS.items():
        try:
            headers[name] = value
        except (TypeError, AttributeError, ValueError) as exc:
            raise HandshakeError(f"cannot set {name} header: {exc}") from exc

"""SSE wire encoding.

Two writers share the same formatting and differ only in where the bytes go:

- Encoder writes each event straight to a sink; backpressure comes from the
  sink's own write/drain.
- Sender hands each event to a single-slot channel drained by a Receiver;
  a full slot suspends the sender, and once the receiver is released every
  send fails with Disconnected.
"""

from __future__ import annotations

import inspect
import re
import threading
from datetime import timedelta
from typing import Any

import anyio
import structlog
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .errors import Disconnected

log = structlog.get_logger()

CHANNEL_CAPACITY = 1

_LINE_BREAK = re.compile(rb"\r\n|\r|\n")


def _check_single_line(field_name: str, value: str) -> None:
    if "\n" in value or "\r" in value:
        raise ValueError(f"SSE {field_name} must not contain line breaks: {value!r}")


def _whole_seconds(duration: timedelta | float) -> int:
    if isinstance(duration, timedelta):
        seconds = duration.total_seconds()
    else:
        seconds = float(duration)
    if seconds < 0:
        raise ValueError(f"retry duration must not be negative: {duration!r}")
    return int(seconds)


def format_message(name: str, data: str | bytes, id: str | None = None) -> bytes:
    """Serialize one message event, terminated by a blank line.

    Multi-line payloads become one ``data:`` line per line.
    """
    _check_single_line("event name", name)
    if isinstance(data, str):
        data = data.encode("utf-8")

    parts = [b"event:", name.encode("utf-8"), b"\n"]
    if id is not None:
        _check_single_line("id", id)
        parts += [b"id:", id.encode("utf-8"), b"\n"]
    for line in _LINE_BREAK.split(data):
        parts += [b"data:", line, b"\n"]
    parts.append(b"\n")
    return b"".join(parts)


def format_retry(duration: timedelta | float, id: str | None = None) -> bytes:
    """Serialize a retry hint. ``duration`` is truncated to whole seconds."""
    parts: list[bytes] = []
    if id is not None:
        _check_single_line("id", id)
        parts += [b"id:", id.encode("utf-8"), b"\n"]
    parts.append(f"retry:{_whole_seconds(duration)}\n\n".encode("ascii"))
    return b"".join(parts)


class EventWriter:
    """Base for SSE writers. Subclasses decide how a serialized event is written."""

    async def send(self, name: str, data: str | bytes, id: str | None = None) -> None:
        """Send a message event."""
        await self._write(format_message(name, data, id))

    async def send_retry(self, duration: timedelta | float, id: str | None = None) -> None:
        """Send a reconnection hint of ``duration`` (whole seconds on the wire)."""
        await self._write(format_retry(duration, id))

    async def _write(self, chunk: bytes) -> None:
        raise NotImplementedError


class Encoder(EventWriter):
    """Writes events directly to a sink.

    The sink is either awaitable-write (``aiohttp.web.StreamResponse``) or a
    stream writer with sync ``write`` and awaitable ``drain``
    (``asyncio.StreamWriter``); plain file objects work too. Each event is
    written in a single call, and concurrent sends are serialized.
    """

    def __init__(self, writer: Any) -> None:
        self._writer = writer
        self._lock = anyio.Lock()

    async def _write(self, chunk: bytes) -> None:
        async with self._lock:
            result = self._writer.write(chunk)
            if inspect.isawaitable(result):
                await result
            else:
                drain = getattr(self._writer, "drain", None)
                if drain is not None:
                    await drain()

    def into_writer(self) -> Any:
        """Return the wrapped sink."""
        return self._writer


class Sender(EventWriter):
    """Sending handle of a channel. Clones share the slot and disconnect flag."""

    def __init__(
        self,
        stream: MemoryObjectSendStream[bytes],
        disconnect: threading.Event,
    ) -> None:
        self._stream = stream
        self._disconnect = disconnect

    @property
    def disconnected(self) -> bool:
        return self._disconnect.is_set()

    async def _write(self, chunk: bytes) -> None:
        if self._disconnect.is_set():
            raise Disconnected()
        try:
            await self._stream.send(chunk)
        except anyio.BrokenResourceError as exc:
            log.debug("sse_sender_disconnected", pending_bytes=len(chunk))
            raise Disconnected() from exc
        except anyio.ClosedResourceError as exc:
            raise Disconnected() from exc

    def clone(self) -> Sender:
        return Sender(self._stream.clone(), self._disconnect)

    def close(self) -> None:
        """Release this handle. The receiver sees EOF once every handle is released.

        Sending on a released handle raises Disconnected.
        """
        self._stream.close()

    async def aclose(self) -> None:
        self.close()

    async def __aenter__(self) -> Sender:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class Receiver:
    """Reading end of a channel.

    Iterate it for whole event chunks, or call ``read(n)`` to consume them
    piecewise. Holds at most one chunk: either awaiting the next one, or
    draining ``_chunk`` from ``_offset``.
    """

    def __init__(
        self,
        stream: MemoryObjectReceiveStream[bytes],
        disconnect: threading.Event,
    ) -> None:
        self._stream = stream
        self._disconnect = disconnect
        self._chunk: bytes | None = None
        self._offset = 0

    @property
    def disconnected(self) -> bool:
        return self._disconnect.is_set()

    def __aiter__(self) -> Receiver:
        return self

    async def __anext__(self) -> bytes:
        if self._chunk is not None:
            rest = self._chunk[self._offset:]
            self._chunk = None
            self._offset = 0
            return rest
        try:
            return await self._stream.receive()
        except anyio.EndOfStream:
            raise StopAsyncIteration from None

    async def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` bytes of the current chunk (all of it if ``n < 0``).

        Returns ``b""`` once every sender has been released.
        """
        if n == 0:
            return b""
        if self._chunk is None:
            try:
                self._chunk = await self._stream.receive()
            except anyio.EndOfStream:
                return b""
            self._offset = 0

        end = len(self._chunk) if n < 0 else min(self._offset + n, len(self._chunk))
        data = self._chunk[self._offset:end]
        self._offset = end
        if self._offset == len(self._chunk):
            self._chunk = None
            self._offset = 0
        return data

    def close(self) -> None:
        """Release the receiver; pending and future sends fail with Disconnected."""
        if not self._disconnect.is_set():
            self._disconnect.set()
            log.debug("sse_receiver_closed")
        self._chunk = None
        self._stream.close()

    async def aclose(self) -> None:
        self.close()

    async def __aenter__(self) -> Receiver:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


def encode(writer: Any) -> Encoder:
    """Create an encoder that writes events directly to ``writer``."""
    return Encoder(writer)


def channel() -> tuple[Sender, Receiver]:
    """Create a backpressured sender/receiver pair joined by a one-chunk slot."""
    send_stream, receive_stream = anyio.create_memory_object_stream(CHANNEL_CAPACITY)
    disconnect = threading.Event()
    return Sender(send_stream, disconnect), Receiver(receive_stream, disconnect)

"""SSE field-dispatch decoder.

Turns text lines into events. The per-line algorithm lives in
DecoderState.feed so it can be driven by a plain iterator; Decoder wraps it
around an async LineReader.

Dispatch rules (one blank line ends an event block):
- ``event`` replaces the pending event type, ``data`` appends value + LF,
  ``id`` sets the stream's last id (kept across dispatches).
- ``retry`` with an all-digit value yields a Retry of that many seconds
  immediately, clamped to the largest whole-second timedelta.
- A blank line yields a Message only if the pending data, minus one
  trailing LF, is non-empty. Pending type and data reset either way.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from .config import SSEConfig
from .errors import InvalidEncoding
from .lines import ByteSource, LineReader
from .message import Event, Message, Retry

log = structlog.get_logger()

BOM = "\ufeff"
DEFAULT_EVENT = "message"
MAX_RETRY = timedelta(days=timedelta.max.days, seconds=86399)
_MAX_RETRY_DIGITS = len(str(int(MAX_RETRY.total_seconds())))


def _is_ascii_digits(value: str) -> bool:
    return value.isascii() and value.isdigit()


def _retry_duration(value: str) -> timedelta:
    digits = value.lstrip("0")
    # int() refuses very long digit strings
    if len(digits) > _MAX_RETRY_DIGITS:
        return MAX_RETRY
    seconds = int(digits or "0")
    if seconds >= MAX_RETRY.total_seconds():
        return MAX_RETRY
    return timedelta(seconds=seconds)


@dataclass
class DecoderState:
    """Accumulation state for one decoded stream."""

    pending_event_type: str = ""
    pending_data: bytearray = field(default_factory=bytearray)
    last_id: str | None = None
    bom_consumed: bool = False

    def feed(self, line: str) -> Event | None:
        """Advance the state by one line, returning the event it completes, if any."""
        if not self.bom_consumed:
            self.bom_consumed = True
            if line.startswith(BOM):
                line = line[1:]

        if not line:
            return self.dispatch()

        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self.pending_event_type = value
        elif name == "data":
            self.pending_data += value.encode("utf-8")
            self.pending_data += b"\n"
        elif name == "id":
            self.last_id = value
        elif name == "retry":
            if _is_ascii_digits(value):
                return Retry(duration=_retry_duration(value), id=self.last_id)
        return None

    def dispatch(self) -> Message | None:
        """Finalize the pending event block. Empty payloads are suppressed."""
        data = bytes(self.pending_data)
        if data.endswith(b"\n"):
            data = data[:-1]
        event_type = self.pending_event_type or DEFAULT_EVENT

        self.pending_event_type = ""
        self.pending_data.clear()

        if not data:
            return None
        return Message(id=self.last_id, event=event_type, data=data)


def decode_lines(lines: Iterable[str]) -> Iterator[Event]:
    """Decode already-split lines synchronously."""
    state = DecoderState()
    for line in lines:
        event = state.feed(line)
        if event is not None:
            yield event


class Decoder:
    """Async iterator of events decoded from a byte source.

    Not restartable. An InvalidEncoding error is raised once; afterwards
    the iterator is exhausted.
    """

    def __init__(self, source: ByteSource, read_size: int = 8192) -> None:
        self._lines = LineReader(source, read_size=read_size)
        self.state = DecoderState()
        self._done = False
        self._count = 0

    def __aiter__(self) -> Decoder:
        return self

    async def __anext__(self) -> Event:
        if self._done:
            raise StopAsyncIteration

        while True:
            try:
                line = await self._lines.readline()
            except InvalidEncoding as exc:
                self._done = True
                log.warning("sse_decode_error", error=str(exc), events=self._count)
                raise

            if line is None:
                self._done = True
                log.debug(
                    "sse_decode_complete",
                    events=self._count,
                    last_id=self.state.last_id,
                    discarded_bytes=len(self.state.pending_data),
                )
                raise StopAsyncIteration

            event = self.state.feed(line)
            if event is not None:
                self._count += 1
                return event

    async def aclose(self) -> None:
        self._done = True
        await self._lines.aclose()


def decode(source: ByteSource, *, config: SSEConfig | None = None) -> Decoder:
    """Decode an SSE byte stream into Message and Retry events.

    ``source`` may be an asyncio or aiohttp stream reader, anything with a
    ``read(n)`` method, an (async) iterable of byte chunks such as
    ``httpx.Response.aiter_bytes()``, or a bytes object.
    """
    if config is None:
        config = SSEConfig()
    return Decoder(source, read_size=config.read_size)

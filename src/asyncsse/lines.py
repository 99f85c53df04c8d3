"""Async line splitting over an arbitrary byte stream.

Lines may end in ``\\n``, ``\\r`` or ``\\r\\n``; exactly one terminator is
consumed per line, including a ``\\r\\n`` pair split across two reads.
"""

from __future__ import annotations

import inspect
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any, Protocol, Union

from .errors import InvalidEncoding

_TERMINATOR = re.compile(rb"[\r\n]")
_CR = 0x0D
_LF = 0x0A


class SupportsRead(Protocol):
    def read(self, n: int = -1) -> Any: ...


ByteSource = Union[
    bytes, bytearray, SupportsRead, AsyncIterable[bytes], Iterable[bytes]
]


async def iter_chunks(source: ByteSource, read_size: int = 8192) -> AsyncIterator[bytes]:
    """Normalize a byte source into an async iterator of non-empty chunks.

    Objects with a ``read`` method (asyncio/aiohttp stream readers, file
    objects) are read ``read_size`` bytes at a time until ``b""``; otherwise
    the source is iterated, asynchronously if it supports it.
    """
    if isinstance(source, (bytes, bytearray)):
        if source:
            yield bytes(source)
        return

    read = getattr(source, "read", None)
    if read is not None:
        while True:
            chunk = read(read_size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                return
            yield chunk
    elif hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield chunk
    else:
        for chunk in source:
            if chunk:
                yield chunk


def _decode_line(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidEncoding(raw, str(exc)) from exc


class LineReader:
    """Lazily yields decoded text lines from a byte source.

    Stateful: iterating twice continues where the previous iteration
    stopped. Raises InvalidEncoding for a line that is not valid UTF-8.
    """

    def __init__(self, source: ByteSource, read_size: int = 8192) -> None:
        self._chunks = iter_chunks(source, read_size)
        self._buffer = bytearray()
        self._pos = 0  # start of the unconsumed region of _buffer
        self._skip_lf = False  # previous line ended in a CR at a chunk boundary
        self._last_fill = 0
        self._eof = False

    def __aiter__(self) -> LineReader:
        return self

    async def __anext__(self) -> str:
        line = await self.readline()
        if line is None:
            raise StopAsyncIteration
        return line

    async def readline(self) -> str | None:
        """Return the next line without its terminator, or None at end of stream."""
        scan = self._pos
        while True:
            match = _TERMINATOR.search(self._buffer, scan)
            if match is not None:
                end = match.start()
                raw = bytes(self._buffer[self._pos:end])
                consumed = end + 1
                if self._buffer[end] == _CR:
                    if consumed < len(self._buffer):
                        if self._buffer[consumed] == _LF:
                            consumed += 1
                    else:
                        self._skip_lf = True
                self._pos = consumed
                return _decode_line(raw)

            if not await self._fill():
                if self._pos == len(self._buffer):
                    return None
                raw = bytes(self._buffer[self._pos:])
                self._buffer.clear()
                self._pos = 0
                return _decode_line(raw)
            # _fill compacts the buffer, shifting unscanned bytes down
            scan = len(self._buffer) - self._last_fill

    async def _fill(self) -> bool:
        """Append the next chunk to the buffer. Returns False at end of stream."""
        self._last_fill = 0
        if self._eof:
            return False
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._eof = True
            return False

        if self._skip_lf:
            self._skip_lf = False
            if chunk[0] == _LF:
                chunk = chunk[1:]

        del self._buffer[:self._pos]
        self._pos = 0
        self._buffer.extend(chunk)
        self._last_fill = len(chunk)
        return True

    async def aclose(self) -> None:
        await self._chunks.aclose()

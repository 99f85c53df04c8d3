"""Decoded SSE events: messages and reconnection hints."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Union


@dataclass(frozen=True)
class Message:
    """A dispatched SSE message.

    ``id`` is the last id seen on the stream at dispatch time, not
    necessarily one set inside this event block.
    """

    id: str | None
    event: str
    data: bytes

    @property
    def name(self) -> str:
        """The event type, ``"message"`` unless the stream named one."""
        return self.event

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


@dataclass(frozen=True)
class Retry:
    """A reconnection-delay hint. The wire value is whole seconds."""

    duration: timedelta
    id: str | None = None


Event = Union[Message, Retry]

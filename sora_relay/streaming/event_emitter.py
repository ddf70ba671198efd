"""Normalized downstream events and their emission.

Handles serialization of progress/result/error events into the outbound
event stream, downstream disconnect detection and the single-terminal-event
guarantee.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Literal, Optional

from ..core.errors import DownstreamUnavailable
from ..core.timing_logger import timed, timing_mark
from ..core.utils import _compact_json
from .constants import DATA_PREFIX, FRAME_DELIMITER

EventType = Literal["progress", "result", "error"]

# Callback-style consumer: awaited once per event, in order.
EventEmitter = Callable[[dict[str, Any]], Awaitable[None]]
DisconnectProbe = Callable[[], Awaitable[bool]]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    """One downstream event: ``progress``, ``result`` or ``error``."""

    type: EventType
    percent: Optional[int] = None
    url: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def progress(cls, percent: int) -> "NormalizedEvent":
        return cls("progress", percent=percent)

    @classmethod
    def result(cls, url: str) -> "NormalizedEvent":
        return cls("result", url=url)

    @classmethod
    def error(cls, message: str) -> "NormalizedEvent":
        return cls("error", message=message)

    @property
    def is_terminal(self) -> bool:
        return self.type != "progress"

    def to_dict(self) -> dict[str, Any]:
        if self.type == "progress":
            return {"type": "progress", "percent": self.percent}
        if self.type == "result":
            return {"type": "result", "url": self.url}
        return {"type": "error", "message": self.message}


@timed
def format_sse_frame(payload: str) -> bytes:
    """Wrap an already-serialized payload in one ``data:`` frame."""
    return f"{DATA_PREFIX} {payload}{FRAME_DELIMITER}".encode("utf-8")


class EventEmitterHandler:
    """Serializes normalized events for one outbound stream.

    The handler is pull-driven: :meth:`stream` only asks the session for the
    next event after the previous frame was taken by the consumer, so the
    relay never holds more than one unacknowledged event and never reads
    upstream ahead of a slow consumer.

    Dependencies:
        - logger: Logger instance for diagnostic output
        - is_disconnected: optional probe returning True once the consumer is gone
    """

    def __init__(
        self,
        *,
        logger: Optional[logging.Logger] = None,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> None:
        self.logger = logger or LOGGER
        self._is_disconnected = is_disconnected
        self._terminal_sent = False
        self.events_sent = 0

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    def serialize(self, event: NormalizedEvent) -> bytes:
        return format_sse_frame(_compact_json(event.to_dict()))

    async def _ensure_connected(self) -> None:
        if self._is_disconnected is not None and await self._is_disconnected():
            raise DownstreamUnavailable("Consumer disconnected")

    def _accept(self, event: NormalizedEvent) -> bool:
        """Return False for anything after the terminal event."""
        if self._terminal_sent:
            self.logger.warning("Dropping %s event emitted after the terminal event", event.type)
            return False
        if event.is_terminal:
            self._terminal_sent = True
            timing_mark(f"terminal_{event.type}")
        self.events_sent += 1
        return True

    async def stream(self, events: AsyncIterator[NormalizedEvent]) -> AsyncGenerator[bytes, None]:
        """Yield one serialized frame per event until the terminal event.

        When the consumer disconnects, ``events`` is closed (releasing the
        upstream) and the generator ends without emitting anything further.
        """
        async with aclosing(events) as source:  # type: ignore[type-var]
            try:
                async for event in source:
                    await self._ensure_connected()
                    if not self._accept(event):
                        continue
                    yield self.serialize(event)
                    if event.is_terminal:
                        break
            except DownstreamUnavailable:
                self.logger.info("Consumer went away; stopping relay after %d event(s)", self.events_sent)

    async def pump(self, events: AsyncIterator[NormalizedEvent], send: EventEmitter) -> Optional[NormalizedEvent]:
        """Await ``send`` once per event; return the terminal event, if any.

        ``send`` raising :class:`DownstreamUnavailable` stops the relay quietly.
        """
        terminal: Optional[NormalizedEvent] = None
        async with aclosing(events) as source:  # type: ignore[type-var]
            try:
                async for event in source:
                    await self._ensure_connected()
                    if not self._accept(event):
                        continue
                    await send(event.to_dict())
                    if event.is_terminal:
                        terminal = event
                        break
            except DownstreamUnavailable:
                self.logger.info("Consumer went away; stopping relay after %d event(s)", self.events_sent)
        return terminal

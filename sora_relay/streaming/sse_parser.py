"""Server-Sent Events (SSE) framing.

This module turns an arbitrary sequence of upstream chunks into complete
event-stream frames:
- Incremental UTF-8 decoding (multi-byte characters may straddle chunks)
- CRLF normalization, including a ``\\r`` / ``\\n`` pair split across chunks
- Splitting on the blank-line frame delimiter while holding back the partial tail
- Emitting the non-empty leftover tail as a final frame at end of input

Frames are returned verbatim; classifying their lines is the job of
:mod:`sora_relay.streaming.delta_interpreter`.
"""

from __future__ import annotations

import codecs
import logging
from typing import AsyncGenerator, AsyncIterable, Optional, Union

from ..core.errors import UpstreamTransportFailure
from ..core.timing_logger import timed
from .constants import FRAME_DELIMITER

LOGGER = logging.getLogger(__name__)

RawChunk = Union[bytes, bytearray, memoryview, str]


class FrameBuffer:
    """Reassembles blank-line delimited frames from arbitrarily split chunks.

    The buffer keeps exactly one pending partial tail between calls. Each
    :meth:`feed` appends to the tail, splits on the delimiter, returns every
    complete piece and keeps the last (possibly partial) piece. :meth:`flush`
    ends the input. Whitespace-only frames are filtered; nothing else is ever
    dropped or returned twice.
    """

    def __init__(
        self,
        *,
        delimiter: str = FRAME_DELIMITER,
        encoding: str = "utf-8",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not delimiter:
            raise ValueError("Frame delimiter must not be empty")
        self._delimiter = delimiter
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
        self._tail = ""
        self._flushed = False
        self.logger = logger or LOGGER
        self.bytes_received = 0
        self.frames_emitted = 0

    @property
    def pending(self) -> str:
        """The partial frame held back until more data arrives."""
        return self._tail

    def feed(self, chunk: RawChunk) -> list[str]:
        """Consume one chunk and return the frames it completed, in order.

        Raises:
            UpstreamTransportFailure: the chunk holds bytes that are not valid UTF-8.
            RuntimeError: the buffer was already flushed.
        """
        if self._flushed:
            raise RuntimeError("FrameBuffer.feed() called after flush()")
        text = self._decode(chunk, final=False)
        if not text:
            return []
        pieces = self._normalize(self._tail + text).split(self._delimiter)
        self._tail = pieces.pop()
        return self._complete(pieces)

    def flush(self) -> list[str]:
        """End the input and return the leftover tail as a final frame, if non-empty.

        Raises:
            UpstreamTransportFailure: the input ended inside a multi-byte character.
        """
        if self._flushed:
            return []
        self._flushed = True
        remainder = self._normalize(self._tail + self._decode(b"", final=True))
        self._tail = ""
        if remainder.strip():
            self.logger.debug("Flushing %d trailing characters as a final frame", len(remainder))
        return self._complete(remainder.split(self._delimiter))

    def _decode(self, chunk: RawChunk, *, final: bool) -> str:
        if isinstance(chunk, str):
            return chunk
        data = bytes(chunk)
        self.bytes_received += len(data)
        try:
            return self._decoder.decode(data, final=final)
        except UnicodeDecodeError as exc:
            if final:
                raise UpstreamTransportFailure(
                    "Upstream stream ended inside a multi-byte character"
                ) from exc
            raise UpstreamTransportFailure(f"Upstream sent undecodable bytes: {exc.reason}") from exc

    @staticmethod
    def _normalize(text: str) -> str:
        return text.replace("\r\n", "\n") if "\r" in text else text

    def _complete(self, pieces: list[str]) -> list[str]:
        frames = [piece for piece in pieces if piece.strip()]
        self.frames_emitted += len(frames)
        return frames


@timed
async def iter_frames(
    chunks: AsyncIterable[RawChunk],
    *,
    frame_buffer: Optional[FrameBuffer] = None,
) -> AsyncGenerator[str, None]:
    """Lazily yield complete frames from an async iterable of raw chunks.

    The generator is finite and not restartable. Transport errors raised by
    ``chunks`` propagate unchanged; decode errors surface as
    :class:`UpstreamTransportFailure`.
    """
    buffer = frame_buffer or FrameBuffer()
    async for chunk in chunks:
        for frame in buffer.feed(chunk):
            yield frame
    for frame in buffer.flush():
        yield frame

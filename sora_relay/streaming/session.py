"""Relay session state machine.

A :class:`RelaySession` ties one upstream byte stream to one outbound event
stream. It owns the frame buffer, the delta interpreter and the content
accumulator, and is the only place session state is mutated::

    INIT ──► STREAMING ──► FINALIZING ──► DONE
      │          │              │
      └──────────┴──────────────┴───────► ERROR

Exactly one terminal event (``result`` or ``error``) is produced per
session, always last. Progress events are strictly increasing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncContextManager, AsyncGenerator, AsyncIterable, Callable, Optional

import aiohttp

from ..core.errors import (
    RelayError,
    UpstreamStreamError,
    UpstreamTransportFailure,
    describe_transport_error,
)
from ..core.logging_system import SessionLogger
from ..core.timing_logger import set_timing_context, timed, timing_mark
from ..core.utils import generate_session_id
from .accumulator import ContentAccumulator
from .delta_interpreter import DeltaInterpreter, FrameKind
from .event_emitter import NormalizedEvent
from .result_extractor import require_result_url
from .sse_parser import FrameBuffer, RawChunk, iter_frames

LOGGER = logging.getLogger(__name__)

UpstreamOpener = Callable[[], AsyncContextManager[AsyncIterable[RawChunk]]]

# Exceptions raised by the transport while the body is being read.
_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
)


class SessionState(str, enum.Enum):
    INIT = "init"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


_ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INIT: frozenset({SessionState.STREAMING, SessionState.ERROR}),
    SessionState.STREAMING: frozenset({SessionState.FINALIZING, SessionState.ERROR}),
    SessionState.FINALIZING: frozenset({SessionState.DONE, SessionState.ERROR}),
    SessionState.DONE: frozenset(),
    SessionState.ERROR: frozenset(),
}


class RelaySession:
    """One-shot translation of an upstream event stream into normalized events.

    Args:
        open_upstream: Zero-argument callable returning an async context manager.
            Entering it performs the upstream request and yields the body as an
            async iterable of raw chunks; it raises ``UpstreamRejected`` for a
            non-success status. Leaving it releases the connection.
        session_id: Identifier used for logs; generated when omitted.
        log_level: Console log level bound to this session.
        timing_enabled: Record enter/exit timings for this session.
    """

    def __init__(
        self,
        open_upstream: UpstreamOpener,
        *,
        session_id: Optional[str] = None,
        log_level: int | str = logging.INFO,
        timing_enabled: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._open_upstream = open_upstream
        self.session_id = session_id or generate_session_id()
        self.logger = logger or LOGGER
        self._log_level = log_level
        self._timing_enabled = timing_enabled

        self.frame_buffer = FrameBuffer(logger=self.logger)
        self.interpreter = DeltaInterpreter(logger=self.logger)
        self.accumulator = ContentAccumulator()

        self._state = SessionState.INIT
        self._consumed = False
        self._last_progress = -1
        self._terminal: Optional[NormalizedEvent] = None
        self._failure: Optional[BaseException] = None
        self._saw_sentinel = False
        self._started_at: Optional[float] = None
        self._ended_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_progress(self) -> Optional[int]:
        return self._last_progress if self._last_progress >= 0 else None

    @property
    def terminal_event(self) -> Optional[NormalizedEvent]:
        return self._terminal

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    def summary(self) -> dict[str, Any]:
        """Diagnostic snapshot used for the closing log line."""
        end = self._ended_at or time.monotonic()
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "last_progress": self.last_progress,
            "frames": self.frame_buffer.frames_emitted,
            "bytes": self.frame_buffer.bytes_received,
            "malformed_frames": self.interpreter.malformed_count,
            "content_chars": len(self.accumulator),
            "saw_done_sentinel": self._saw_sentinel,
            "duration_ms": round((end - self._started_at) * 1000, 1) if self._started_at else None,
        }

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: SessionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal relay session transition {self._state.value} -> {target.value}")
        self.logger.debug("Session %s: %s -> %s", self.session_id, self._state.value, target.value)
        self._state = target

    def _finish(self, event: NormalizedEvent) -> NormalizedEvent:
        self._transition(SessionState.DONE if event.type == "result" else SessionState.ERROR)
        self._terminal = event
        return event

    def _fail(self, exc: BaseException, message: str) -> NormalizedEvent:
        self._failure = exc
        return self._finish(NormalizedEvent.error(message))

    def _accept_progress(self, percent: Optional[int]) -> Optional[NormalizedEvent]:
        if percent is None or percent <= self._last_progress:
            return None
        self._last_progress = percent
        return NormalizedEvent.progress(percent)

    # ------------------------------------------------------------------
    # Relay loop
    # ------------------------------------------------------------------

    @timed
    async def events(self) -> AsyncGenerator[NormalizedEvent, None]:
        """Run the session and yield normalized events, terminal event last.

        May be consumed once. Closing the generator early (consumer gone)
        releases the upstream connection and emits nothing further.
        """
        if self._consumed:
            raise RuntimeError("RelaySession.events() can only be consumed once")
        self._consumed = True
        self._started_at = time.monotonic()
        SessionLogger.bind(self.session_id, self._log_level)
        set_timing_context(self.session_id, self._timing_enabled)

        terminal: Optional[NormalizedEvent] = None
        try:
            async with self._open_upstream() as chunks:
                self._transition(SessionState.STREAMING)
                timing_mark("upstream_accepted")
                async with aclosing(iter_frames(chunks, frame_buffer=self.frame_buffer)) as frames:
                    async for frame in frames:
                        for progress in self._consume_frame(frame):
                            yield progress
                        if self._saw_sentinel:
                            break

            self._transition(SessionState.FINALIZING)
            url = require_result_url(self.accumulator.document())
            terminal = self._finish(NormalizedEvent.result(url))
        except RelayError as exc:
            self.logger.warning("Relay session %s failed: %s", self.session_id, exc.user_message)
            terminal = self._fail(exc, exc.user_message)
        except _TRANSPORT_ERRORS as exc:
            reason = describe_transport_error(exc)
            self.logger.warning("Relay session %s lost the upstream: %s", self.session_id, reason)
            terminal = self._fail(UpstreamTransportFailure(reason), reason)
        finally:
            self._ended_at = time.monotonic()
            self.logger.info("Relay session closed: %s", self.summary())
            if self._state is SessionState.ERROR:
                SessionLogger.replay_suppressed(self.session_id, self.logger)

        yield terminal

    def _consume_frame(self, frame: str) -> list[NormalizedEvent]:
        """Apply one frame to the session; return the progress events it produced."""
        produced: list[NormalizedEvent] = []
        for interpretation in self.interpreter.interpret_frame(frame):
            if interpretation.kind is FrameKind.DONE:
                # Anything after the sentinel, including repeated sentinels, is ignored.
                self._saw_sentinel = True
                break
            if interpretation.kind is FrameKind.UPSTREAM_ERROR:
                raise UpstreamStreamError(interpretation.error_message or "Upstream reported an error")
            if interpretation.kind is not FrameKind.DELTA or interpretation.delta is None:
                continue
            delta = interpretation.delta
            progress = self._accept_progress(delta.progress)
            if progress is not None:
                produced.append(progress)
            if delta.content is not None:
                self.accumulator.append(delta.content)
        return produced

"""Relay orchestration: one generation request, one of three downstream shapes.

- ``translate``   normalized ``progress`` / ``result`` / ``error`` events (default)
- ``passthrough`` upstream frames forwarded verbatim, for clients that parse
  the backend protocol themselves; failures still arrive as one normalized
  ``error`` frame
- ``buffered``    the session runs to completion and a single JSON object is
  returned, like a non-streaming endpoint

Every mode reads the backend as an event stream and owns its upstream
connection for exactly the lifetime of the downstream response.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Optional

import aiohttp

from .core.config import RelayMode, Valves
from .core.errors import RelayError, UpstreamTransportFailure, describe_transport_error
from .core.logging_system import SessionLogger
from .core.timing_logger import set_timing_context, timed
from .core.utils import generate_session_id
from .requests.payload import GenerateRequest, build_generation_payload
from .requests.upstream import UpstreamClient
from .streaming.constants import FRAME_DELIMITER
from .streaming.delta_interpreter import DeltaInterpreter, FrameKind
from .streaming.event_emitter import DisconnectProbe, EventEmitterHandler, NormalizedEvent
from .streaming.session import _TRANSPORT_ERRORS, RelaySession
from .streaming.sse_parser import FrameBuffer, iter_frames

LOGGER = logging.getLogger(__name__)

# Non-standard status for a request whose client went away (nginx convention).
CLIENT_CLOSED_REQUEST = 499


class Relay:
    """Creates relay sessions from generation requests and renders them per mode.

    Dependencies:
        - valves: resolved configuration (base URL, credential, timeouts)
        - http_session: optional shared aiohttp session, mainly for tests
        - logger: Logger instance for diagnostic output
    """

    def __init__(
        self,
        valves: Valves,
        *,
        http_session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves
        self.logger = logger or LOGGER
        self.client = UpstreamClient(valves, http_session=http_session, logger=self.logger)

    def resolve_mode(self, override: Optional[str]) -> RelayMode:
        """Return the requested mode, falling back to the configured default.

        Raises:
            ValueError: ``override`` names an unknown mode.
        """
        if not override:
            return self.valves.RELAY_MODE
        mode = override.strip().lower()
        if mode not in ("translate", "passthrough", "buffered"):
            raise ValueError(f"Unknown relay mode '{override}'")
        return mode  # type: ignore[return-value]

    def new_session(self, request: GenerateRequest, *, session_id: Optional[str] = None) -> RelaySession:
        payload = build_generation_payload(request)
        return RelaySession(
            self.client.opener(payload),
            session_id=session_id,
            log_level=self.valves.LOG_LEVEL,
            timing_enabled=self.valves.ENABLE_TIMING_LOG,
            logger=self.logger,
        )

    # ------------------------------------------------------------------
    # translate
    # ------------------------------------------------------------------

    @timed
    async def translate(
        self,
        request: GenerateRequest,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncGenerator[bytes, None]:
        """Yield serialized normalized events until the terminal event."""
        session = self.new_session(request)
        emitter = EventEmitterHandler(logger=self.logger, is_disconnected=is_disconnected)
        try:
            async with aclosing(emitter.stream(session.events())) as frames:
                async for frame in frames:
                    yield frame
        finally:
            SessionLogger.discard(session.session_id)

    # ------------------------------------------------------------------
    # passthrough
    # ------------------------------------------------------------------

    @timed
    async def passthrough(
        self,
        request: GenerateRequest,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncGenerator[bytes, None]:
        """Yield upstream frames verbatim, each re-terminated with a blank line.

        Frames are still reassembled first so the consumer never sees half a
        frame. Forwarding stops after the ``[DONE]`` frame.
        """
        session_id = generate_session_id()
        SessionLogger.bind(session_id, self.valves.LOG_LEVEL)
        set_timing_context(session_id, self.valves.ENABLE_TIMING_LOG)
        emitter = EventEmitterHandler(logger=self.logger)
        interpreter = DeltaInterpreter(logger=self.logger)
        buffer = FrameBuffer(logger=self.logger)
        opener = self.client.opener(build_generation_payload(request))

        failure: Optional[NormalizedEvent] = None
        try:
            async with opener() as chunks:
                async with aclosing(iter_frames(chunks, frame_buffer=buffer)) as frames:
                    async for frame in frames:
                        if is_disconnected is not None and await is_disconnected():
                            self.logger.info("Consumer went away during passthrough after %d frame(s)", buffer.frames_emitted)
                            return
                        yield f"{frame}{FRAME_DELIMITER}".encode("utf-8")
                        if any(item.kind is FrameKind.DONE for item in interpreter.interpret_frame(frame)):
                            break
        except RelayError as exc:
            self.logger.warning("Passthrough %s failed: %s", session_id, exc.user_message)
            failure = NormalizedEvent.error(exc.user_message)
        except _TRANSPORT_ERRORS as exc:
            reason = describe_transport_error(exc)
            self.logger.warning("Passthrough %s lost the upstream: %s", session_id, reason)
            failure = NormalizedEvent.error(UpstreamTransportFailure(reason).user_message)
        finally:
            self.logger.info(
                "Passthrough closed: %s",
                {"session_id": session_id, "frames": buffer.frames_emitted, "bytes": buffer.bytes_received},
            )
            if failure is not None:
                SessionLogger.replay_suppressed(session_id, self.logger)
            SessionLogger.discard(session_id)

        if failure is not None:
            yield emitter.serialize(failure)

    # ------------------------------------------------------------------
    # buffered
    # ------------------------------------------------------------------

    @timed
    async def buffered(
        self,
        request: GenerateRequest,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> tuple[int, dict[str, Any]]:
        """Run a session to completion; return ``(status, body)`` for a JSON response.

        The consumer is probed once per event. When it has gone, the session is
        closed (releasing the upstream) and ``499`` is returned; nobody reads it.
        """
        session = self.new_session(request)
        emitter = EventEmitterHandler(logger=self.logger, is_disconnected=is_disconnected)

        async def _record(payload: dict[str, Any]) -> None:
            if payload["type"] == "progress":
                self.logger.debug("Buffered relay progress: %s%%", payload["percent"])

        try:
            terminal = await emitter.pump(session.events(), _record)
        finally:
            SessionLogger.discard(session.session_id)

        if terminal is None:
            return CLIENT_CLOSED_REQUEST, {"error": "Consumer disconnected"}
        if terminal.type == "result":
            return 200, {"url": terminal.url, "raw": session.accumulator.document()}
        return 502, {"error": terminal.message}

    def stream(
        self,
        request: GenerateRequest,
        mode: RelayMode,
        *,
        is_disconnected: Optional[DisconnectProbe] = None,
    ) -> AsyncGenerator[bytes, None]:
        """Return the byte stream for a streaming ``mode``."""
        if mode == "passthrough":
            return self.passthrough(request, is_disconnected=is_disconnected)
        if mode == "translate":
            return self.translate(request, is_disconnected=is_disconnected)
        raise ValueError(f"Relay mode '{mode}' does not stream")

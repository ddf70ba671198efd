"""Logging system with per-session log capture.

This module handles all logging-related functionality:
- SessionLogger: Per-session logger with context-aware buffering
- Log event construction for the in-memory buffer
- Replay of records kept off the console when a session fails
- Explicit release of session buffers once a relay session closes

The SessionLogger uses contextvars to track the relay session id, so every
record emitted while a session runs is tagged and buffered under that id.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextvars import ContextVar
from typing import Any, Dict, Optional

from .timing_logger import timed

LOGGER = logging.getLogger(__name__)

_SESSION_HANDLER_MARKER = "_sora_relay_session_handler"


class SessionLogger:
    """Per-session logger that writes to stdout and an in-memory log buffer.

    The logger tracks three context values:
    - session_id: relay session identifier, used to key the in-memory buffer.
    - request_id: identifier of the HTTP request that opened the session.
    - log_level:  minimum level written to the console for this session.

    Cleanup is explicit: the relay calls ``discard`` when a session's outbound
    stream closes, and ``cleanup`` prunes buffers that were never discarded.
    Before a failed session is discarded, its records below the console level
    are replayed through ``suppressed_lines``.

    Attributes:
        logs: Map of session_id -> fixed-size deque of structured log events.
    """

    session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
    request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    max_lines: int = 2000
    logs: Dict[str, deque[dict[str, Any]]] = {}
    _session_last_seen: Dict[str, float] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d [%(session_id)s] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured session log event extracted from a LogRecord."""
        event: dict[str, Any] = {
            "created": float(getattr(record, "created", time.time())),
            "level": record.levelname,
            "logger": record.name,
            "session_id": getattr(record, "session_id", None),
            "request_id": getattr(record, "request_id", None),
            "func": record.funcName,
            "lineno": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            event["exception"] = {"text": "".join(traceback.format_exception(*record.exc_info))}
        return event

    @classmethod
    def get_logger(cls, name: str = "sora_relay") -> logging.Logger:
        """Return ``name`` wired to the current SessionLogger context.

        Child loggers (``sora_relay.streaming.session`` ...) propagate into this
        one, so installing it on the package root covers the whole relay. The
        call is idempotent.
        """
        logger = logging.getLogger(name)
        if any(getattr(handler, _SESSION_HANDLER_MARKER, False) for handler in logger.handlers):
            return logger

        logger.setLevel(logging.DEBUG)
        logger.propagate = False

        def _filter(record: logging.LogRecord) -> bool:
            """Attach the session id and the per-session console level."""
            sid = cls.session_id.get()
            record.session_id = sid or "-"
            record.request_id = cls.request_id.get()
            record.session_log_level = cls.log_level.get()
            return True

        handler = logging.Handler()
        handler.addFilter(_filter)
        handler.emit = cls.process_record  # type: ignore[method-assign]
        setattr(handler, _SESSION_HANDLER_MARKER, True)
        logger.addHandler(handler)
        return logger

    @classmethod
    def bind(cls, session_id: str, level: int | str = logging.INFO) -> None:
        """Bind the running task's context to ``session_id``."""
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO
        cls.session_id.set(session_id)
        cls.log_level.set(level)

    @classmethod
    def bind_request(cls, request_id: Optional[str]) -> None:
        cls.request_id.set(request_id)

    @classmethod
    def set_max_lines(cls, value: int) -> None:
        """Set the maximum in-memory lines retained per session."""
        cls.max_lines = max(100, min(200000, int(value)))

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        try:
            printed = record.levelno >= int(getattr(record, "session_log_level", logging.INFO))
            if printed:
                sys.stdout.write(cls._console_formatter.format(record) + "\n")
                sys.stdout.flush()
            session_id = getattr(record, "session_id", None)
            if not session_id or session_id == "-":
                return
            event = cls._build_event(record)
            event["printed"] = printed
            with cls._state_lock:
                buffer = cls.logs.get(session_id)
                if buffer is None or buffer.maxlen != cls.max_lines:
                    buffer = deque(buffer or (), maxlen=cls.max_lines)
                    cls.logs[session_id] = buffer
                buffer.append(event)
                cls._session_last_seen[session_id] = time.time()
        except Exception:
            # Logging must never break request handling.
            return

    @classmethod
    def events(cls, session_id: str) -> list[dict[str, Any]]:
        with cls._state_lock:
            return list(cls.logs.get(session_id) or ())

    @classmethod
    def suppressed_lines(cls, session_id: str) -> list[str]:
        """Render the buffered records of ``session_id`` that stayed off the console.

        A failed session replays these so its DEBUG trail is visible even when
        the console runs at INFO.
        """
        lines: list[str] = []
        for event in cls.events(session_id):
            if event.get("printed"):
                continue
            stamp = time.strftime("%H:%M:%S", time.localtime(event["created"]))
            lines.append(
                f"{stamp} | {event['level']:<8} | {event['logger']}:{event['func']}:{event['lineno']} - {event['message']}"
            )
        return lines

    @classmethod
    def replay_suppressed(cls, session_id: str, logger: logging.Logger) -> None:
        """Log the suppressed records of a failed session as one WARNING."""
        lines = cls.suppressed_lines(session_id)
        if lines:
            logger.warning(
                "Session %s failed; %d buffered record(s) below the console level:\n%s",
                session_id,
                len(lines),
                "\n".join(lines),
            )

    @classmethod
    @timed
    def discard(cls, session_id: str) -> None:
        """Drop the buffer of a closed session."""
        with cls._state_lock:
            cls.logs.pop(session_id, None)
            cls._session_last_seen.pop(session_id, None)

    @classmethod
    @timed
    def cleanup(cls, max_age_seconds: float = 3600) -> None:
        """Remove stale session logs to avoid unbounded growth."""
        cutoff = time.time() - max_age_seconds
        with cls._state_lock:
            stale = [sid for sid, ts in cls._session_last_seen.items() if ts < cutoff]
            for sid in stale:
                cls.logs.pop(sid, None)
                cls._session_last_seen.pop(sid, None)

"""Function timing instrumentation with direct file output.

Provides:
- @timed decorator for automatic function entrance/exit logging
- timing_scope() context manager for code block timing
- timing_mark() for point-in-time events (first upstream chunk, terminal event)

Records are written as JSONL to the file configured through the
``TIMING_LOG_FILE`` valve, only for sessions where ``ENABLE_TIMING_LOG`` is on.

Usage:
    from .core.timing_logger import timed, timing_scope, timing_mark

    @timed
    async def open_stream():
        with timing_scope("upstream_post"):
            ...
        timing_mark("first_chunk")
"""

from __future__ import annotations

import datetime
import functools
import inspect
import json
import threading
import time
from contextlib import aclosing, contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

# -----------------------------------------------------------------------------
# Global file output state
# -----------------------------------------------------------------------------

_timing_file_lock = threading.Lock()
_timing_file_path: Optional[Path] = None
_timing_file_handle: Optional[Any] = None

_timing_enabled: ContextVar[bool] = ContextVar("timing_enabled", default=False)
_timing_session_id: ContextVar[Optional[str]] = ContextVar("timing_session_id", default=None)

_PACKAGE_PREFIX = "sora_relay."


def _format_iso_utc(wall_ts: float) -> str:
    """Format wall clock time as ISO 8601 UTC string."""
    dt = datetime.datetime.fromtimestamp(wall_ts, tz=datetime.timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _record_event(event: str, label: str, perf_ts: float, elapsed_ms: Optional[float] = None) -> None:
    """Append one JSONL record to the timing file when timing is on for this session."""
    session_id = _timing_session_id.get()
    if not session_id:
        return

    record: Dict[str, Any] = {
        "ts": _format_iso_utc(time.time()),
        "perf_ts": round(perf_ts, 6),
        "event": event,
        "label": label,
        "session_id": session_id,
    }
    if elapsed_ms is not None:
        record["elapsed_ms"] = round(elapsed_ms, 3)

    with _timing_file_lock:
        if _timing_file_handle is None:
            return
        try:
            _timing_file_handle.write(json.dumps(record, separators=(",", ":")) + "\n")
            _timing_file_handle.flush()
        except (OSError, ValueError):
            # A closed or full log file must not break the relay.
            pass


# -----------------------------------------------------------------------------
# Public API: file configuration
# -----------------------------------------------------------------------------


def configure_timing_file(file_path: str) -> bool:
    """Open ``file_path`` for appending timing records, creating parent directories.

    Returns:
        True if the file is ready for writing, False otherwise.
    """
    global _timing_file_path, _timing_file_handle

    path = Path(file_path)
    with _timing_file_lock:
        if _timing_file_handle is not None and _timing_file_path == path:
            return True
        if _timing_file_handle is not None:
            _timing_file_handle.close()
            _timing_file_handle = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _timing_file_handle = open(path, "a", encoding="utf-8")
            _timing_file_path = path
            return True
        except OSError:
            _timing_file_path = None
            _timing_file_handle = None
            return False


def close_timing_file() -> None:
    """Close the timing log file. Safe to call multiple times."""
    global _timing_file_handle, _timing_file_path

    with _timing_file_lock:
        if _timing_file_handle is not None:
            _timing_file_handle.close()
        _timing_file_handle = None
        _timing_file_path = None


# -----------------------------------------------------------------------------
# Public API: context management
# -----------------------------------------------------------------------------


def set_timing_context(session_id: str, enabled: bool) -> None:
    """Enable or disable timing for the relay session running in this context."""
    _timing_session_id.set(session_id if enabled else None)
    _timing_enabled.set(enabled)


def clear_timing_context() -> None:
    _timing_session_id.set(None)
    _timing_enabled.set(False)


def timing_mark(label: str) -> None:
    """Record a single point-in-time timing event."""
    if not _timing_enabled.get():
        return
    _record_event("mark", label, time.perf_counter())


@contextmanager
def timing_scope(label: str):
    """Context manager recording enter/exit events with elapsed time."""
    if not _timing_enabled.get():
        yield
        return
    start = time.perf_counter()
    _record_event("enter", label, start)
    try:
        yield
    finally:
        end = time.perf_counter()
        _record_event("exit", label, end, (end - start) * 1000)


# -----------------------------------------------------------------------------
# Public API: @timed decorator
# -----------------------------------------------------------------------------

F = TypeVar("F", bound=Callable[..., Any])


def timed(func: F) -> F:
    """Decorator for timing function entrance/exit.

    Works with sync functions, coroutines and async generators. For async
    generators the scope covers the whole iteration, not just creation.
    """
    module = getattr(func, "__module__", "") or ""
    qualname = getattr(func, "__qualname__", "") or getattr(func, "__name__", "unknown")
    if module.startswith(_PACKAGE_PREFIX):
        module = module[len(_PACKAGE_PREFIX) :]
    label = f"{module}.{qualname}" if module else qualname

    if inspect.isasyncgenfunction(func):

        @functools.wraps(func)
        async def agen_wrapper(*args: Any, **kwargs: Any) -> Any:
            # aclosing() forwards an early aclose() to the wrapped generator.
            with timing_scope(label):
                async with aclosing(func(*args, **kwargs)) as agen:
                    async for item in agen:
                        yield item

        return agen_wrapper  # type: ignore[return-value]

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _timing_enabled.get():
                return await func(*args, **kwargs)
            with timing_scope(label):
                return await func(*args, **kwargs)

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        if not _timing_enabled.get():
            return func(*args, **kwargs)
        with timing_scope(label):
            return func(*args, **kwargs)

    return sync_wrapper  # type: ignore[return-value]

"""Test configuration helpers for unit tests."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import pytest

from sora_relay.core import timing_logger
from sora_relay.core.config import Valves
from sora_relay.core.logging_system import _SESSION_HANDLER_MARKER, SessionLogger

SORA_BASE_URL = "http://sora.test"
CHAT_COMPLETIONS_URL = f"{SORA_BASE_URL}/v1/chat/completions"


# ─────────────────────────────────────────────────────────────────────────────
# Fake upstream
# ─────────────────────────────────────────────────────────────────────────────


class FakeUpstream:
    """Scripted upstream body with chunk-level control.

    ``open`` matches the opener contract of RelaySession: entering yields the
    body as an async iterator of chunks, leaving releases the "connection".
    """

    def __init__(
        self,
        chunks: Iterable[bytes | str],
        *,
        reject: Optional[BaseException] = None,
        raise_after: Optional[int] = None,
        exception: Optional[BaseException] = None,
    ) -> None:
        self._chunks = list(chunks)
        self._reject = reject
        self._raise_after = raise_after
        self._exception = exception or ConnectionResetError("reset by peer")
        self.open_count = 0
        self.released = False
        self.chunks_read = 0

    async def _iterate(self) -> AsyncIterator[bytes | str]:
        for idx, chunk in enumerate(self._chunks):
            if self._raise_after is not None and idx >= self._raise_after:
                raise self._exception
            await asyncio.sleep(0)
            self.chunks_read += 1
            yield chunk
        if self._raise_after is not None and self._raise_after >= len(self._chunks):
            raise self._exception

    @asynccontextmanager
    async def open(self) -> AsyncIterator[AsyncIterator[bytes | str]]:
        self.open_count += 1
        try:
            if self._reject is not None:
                raise self._reject
            yield self._iterate()
        finally:
            self.released = True


# ─────────────────────────────────────────────────────────────────────────────
# Shared Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep host configuration and global logging state out of the tests."""
    for name in ("RELAY_SECRET_KEY", "SORA_API_KEY", "ACCESS_CODE", "RELAY_MODE", "GLOBAL_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    timing_logger.clear_timing_context()
    yield
    timing_logger.close_timing_file()
    timing_logger.clear_timing_context()
    # create_app() installs the session handler on the package logger; undo it
    # so caplog keeps seeing records in later tests.
    package_logger = logging.getLogger("sora_relay")
    for handler in list(package_logger.handlers):
        if getattr(handler, _SESSION_HANDLER_MARKER, False):
            package_logger.removeHandler(handler)
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
    with SessionLogger._state_lock:
        SessionLogger.logs.clear()
        SessionLogger._session_last_seen.clear()


@pytest.fixture
def valves() -> Valves:
    """Return valves pointing at the fake backend with a configured credential."""
    return Valves(SORA_BASE_URL=SORA_BASE_URL, SORA_API_KEY="sk-test")


@pytest.fixture
def fake_upstream_factory():
    """Return the FakeUpstream class for building scripted upstream bodies."""
    return FakeUpstream


@pytest.fixture
def sample_image_base64() -> str:
    """Return a 1x1 transparent PNG encoded as base64."""
    return (
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
    )

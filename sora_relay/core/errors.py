"""Error taxonomy for the relay and user-facing error messages.

Every failure a consumer can observe is a :class:`RelayError` subclass whose
``user_message`` becomes the single ``error`` event of a session:

- UpstreamRejected: non-success status before streaming began
- UpstreamTransportFailure: connection, payload, timeout or decode failure while reading
- UpstreamStreamError: error object delivered inside the upstream stream
- NoResultFound: clean end of stream without an extractable media URL

MalformedFrame is recovered inside the delta interpreter and DownstreamUnavailable
only stops processing; neither is ever shown to the consumer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from .timing_logger import timed
from .utils import _safe_json_loads, _truncate

LOGGER = logging.getLogger(__name__)

NO_RESULT_MESSAGE = "no resolvable result"


class RelayError(RuntimeError):
    """Base class for failures surfaced to the consumer as one ``error`` event."""

    def __init__(self, user_message: str) -> None:
        self.user_message = user_message
        super().__init__(user_message)


class UpstreamRejected(RelayError):
    """The backend answered with a non-success status before any frame was relayed."""

    def __init__(self, *, status: int, body: str = "", max_chars: int = 500) -> None:
        self.status = status
        self.body = body or ""
        detail = _extract_upstream_error_message(self.body) or self.body.strip()
        detail = _truncate(detail, max_chars) or "empty response"
        super().__init__(f"Upstream error ({status}): {detail}")


class UpstreamTransportFailure(RelayError):
    """The upstream body could not be read to completion."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class UpstreamStreamError(RelayError):
    """The backend reported an error inside an otherwise healthy stream."""


class NoResultFound(RelayError):
    """The stream ended cleanly but no media URL could be extracted."""

    def __init__(self, message: str = NO_RESULT_MESSAGE) -> None:
        super().__init__(message)


class MalformedFrame(ValueError):
    """A data frame whose payload is not valid JSON. Never leaves the interpreter."""

    def __init__(self, payload: str, reason: str = "") -> None:
        self.payload = payload
        self.reason = reason
        super().__init__(f"Malformed frame payload: {reason or 'unparseable'}")


class DownstreamUnavailable(Exception):
    """The consumer went away; processing stops and the upstream is released."""


# -----------------------------------------------------------------------------
# Error Helper Functions
# -----------------------------------------------------------------------------


@timed
def _extract_upstream_error_message(body_text: Optional[str]) -> Optional[str]:
    """Return the human-readable message of an OpenAI-style error body, if any.

    Recognized shapes: ``{"error": {"message": ...}}``, ``{"error": "..."}``,
    ``{"message": ...}`` and ``{"detail": ...}``.
    """
    parsed = _safe_json_loads(body_text) if body_text else None
    if not isinstance(parsed, dict):
        return None
    return _message_from_error_object(parsed)


def _message_from_error_object(payload: dict[str, Any]) -> Optional[str]:
    error_section = payload.get("error")
    if isinstance(error_section, dict):
        candidate = error_section.get("message")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    elif isinstance(error_section, str) and error_section.strip():
        return error_section.strip()
    for key in ("message", "detail"):
        candidate = payload.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


@timed
def describe_transport_error(exc: BaseException) -> str:
    """Map aiohttp/asyncio exceptions raised while reading to a short reason."""
    if isinstance(exc, UpstreamTransportFailure):
        return exc.reason
    if isinstance(exc, asyncio.TimeoutError):
        return "Upstream timed out while streaming"
    if isinstance(exc, aiohttp.ClientPayloadError):
        return "Upstream connection closed before the stream completed"
    if isinstance(exc, aiohttp.ServerDisconnectedError):
        return "Upstream server disconnected"
    if isinstance(exc, aiohttp.ClientConnectorError):
        return "Could not connect to upstream"
    if isinstance(exc, aiohttp.ClientError):
        detail = str(exc).strip()
        return f"Upstream transport error: {detail}" if detail else "Upstream transport error"
    if isinstance(exc, ConnectionError):
        return "Upstream connection reset"
    detail = str(exc).strip()
    return detail or type(exc).__name__

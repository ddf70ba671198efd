"""Shared utility functions for the relay.

Helpers with no dependencies on the rest of the package:
- JSON helpers (_safe_json_loads, _compact_json)
- String helpers (_truncate, _redact_payload_blobs)
- Identifier generation (generate_session_id)
"""

from __future__ import annotations

import json
import secrets
import time
from typing import Any, Optional

_SESSION_ID_PREFIX = "relay"


def _safe_json_loads(payload: Optional[str]) -> Any:
    """Return parsed JSON or None without raising."""
    if not payload:
        return None
    try:
        return json.loads(payload)
    except (TypeError, ValueError):
        return None


def _compact_json(value: Any) -> str:
    """Serialize ``value`` without insignificant whitespace, keeping non-ASCII text readable."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _truncate(text: str, limit: int) -> str:
    """Clip ``text`` to ``limit`` characters, marking the cut with an ellipsis."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(0, limit - 1)].rstrip() + "…"


def generate_session_id() -> str:
    """Return a sortable, unique identifier for one relay session."""
    return f"{_SESSION_ID_PREFIX}-{int(time.time() * 1000):x}-{secrets.token_hex(4)}"


_DATA_URL_MARKER = "redacted"


def _redact_payload_blobs(value: Any, *, max_chars: int = 256) -> Any:
    """Return a copy of ``value`` with long ``data:...;base64,...`` strings shortened.

    Attachments travel inline, so request payloads can be many megabytes;
    debug logs only need the header and the size.
    """

    def _redact_data_url(text: str) -> str:
        if not text.startswith("data:") or ";base64," not in text or len(text) <= max_chars:
            return text
        header, b64 = text.split(",", 1)
        return f"{header},{b64[:32]}…[{_DATA_URL_MARKER} {len(b64)} chars]"

    if isinstance(value, dict):
        return {k: _redact_payload_blobs(v, max_chars=max_chars) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_payload_blobs(v, max_chars=max_chars) for v in value]
    if isinstance(value, str):
        return _redact_data_url(value)
    return value

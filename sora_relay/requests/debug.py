"""Debug utilities for upstream request/response logging.

Callers pass their own logger so records land in the session log buffer.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from ..core.timing_logger import timed
from ..core.utils import _redact_payload_blobs


@timed
def _debug_print_request(
    headers: Dict[str, str],
    payload: Optional[Dict[str, Any]],
    *,
    logger: logging.Logger,
) -> None:
    """Log redacted request metadata when DEBUG logging is enabled."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    redacted_headers = dict(headers or {})
    if "Authorization" in redacted_headers:
        token = redacted_headers["Authorization"]
        redacted_headers["Authorization"] = f"{token[:10]}..." if len(token) > 10 else "***"
    logger.debug("Upstream request headers: %s", json.dumps(redacted_headers, indent=2))
    if payload is not None:
        logger.debug(
            "Upstream request payload: %s",
            json.dumps(_redact_payload_blobs(payload), indent=2, ensure_ascii=False),
        )


@timed
async def _read_error_response(resp: Any, *, logger: logging.Logger) -> str:
    """Return the body of a rejected response, logging it at debug level.

    Args:
        resp: aiohttp.ClientResponse with a non-success status.

    Returns:
        str: Response body text, or a placeholder when it cannot be read.
    """
    try:
        text = await resp.text(errors="replace")
    except Exception as exc:
        text = f"<<failed to read body: {exc}>>"
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "Upstream error response: %s",
            json.dumps(
                {
                    "status": getattr(resp, "status", None),
                    "reason": getattr(resp, "reason", None),
                    "url": str(getattr(resp, "url", "")),
                    "body": text,
                },
                indent=2,
                ensure_ascii=False,
            ),
        )
    return text

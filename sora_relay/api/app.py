"""FastAPI application exposing the relay.

Routes:
- ``POST /api/generate``: start a generation; the response shape follows the
  relay mode (``?mode=`` overrides ``RELAY_MODE``)
- ``GET /healthz``: liveness probe
"""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import aiohttp
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from ..core.config import Valves
from ..core.logging_system import SessionLogger
from ..core.timing_logger import close_timing_file, configure_timing_file
from ..relay import Relay
from ..requests.payload import GenerateRequest
from ..streaming.constants import SSE_MEDIA_TYPE
from .auth import ACCESS_CODE_HEADER, AccessGate

LOGGER = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Session buffers that were never discarded are pruned after this many seconds.
_SESSION_LOG_MAX_AGE_SECONDS = 3600


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status)


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    message = str(first.get("msg") or "invalid request body")
    return f"{location}: {message}" if location else message


def create_app(
    valves: Optional[Valves] = None,
    *,
    http_session: Optional[aiohttp.ClientSession] = None,
) -> FastAPI:
    """Create the relay application.

    Args:
        valves: Configuration; read from the environment when omitted.
        http_session: Optional shared aiohttp session for upstream calls.

    Returns:
        Configured FastAPI application.
    """
    valves = valves or Valves()
    SessionLogger.get_logger("sora_relay")
    SessionLogger.set_max_lines(valves.SESSION_LOG_MAX_LINES)
    relay = Relay(valves, http_session=http_session)
    gate = AccessGate(valves.resolved_access_code())

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if valves.ENABLE_TIMING_LOG and not configure_timing_file(valves.TIMING_LOG_FILE):
            LOGGER.warning("Timing log disabled: cannot open %s", valves.TIMING_LOG_FILE)
        LOGGER.info("Relay ready: upstream=%s mode=%s", valves.chat_completions_url, valves.RELAY_MODE)
        try:
            yield
        finally:
            close_timing_file()

    app = FastAPI(title="Sora Relay", lifespan=lifespan)
    app.state.valves = valves
    app.state.relay = relay

    @app.post("/api/generate")
    async def generate(request: Request, mode: Optional[str] = None):
        if not valves.resolved_api_key():
            LOGGER.error("Rejecting generation request: SORA_API_KEY is not configured")
            return _error(500, "Server is missing SORA_API_KEY")

        if not gate.is_authorized(request.headers.get(ACCESS_CODE_HEADER)):
            return _error(401, "Access code is missing or incorrect", code="UNAUTHORIZED")

        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Request body must be JSON")
        try:
            generate_request = GenerateRequest.model_validate(body)
        except ValidationError as exc:
            return _error(400, _describe_validation_error(exc))
        try:
            relay_mode = relay.resolve_mode(mode)
        except ValueError as exc:
            return _error(400, str(exc))

        SessionLogger.cleanup(_SESSION_LOG_MAX_AGE_SECONDS)
        SessionLogger.bind_request(request.headers.get(REQUEST_ID_HEADER) or secrets.token_hex(8))
        LOGGER.debug(
            "Generation request: model=%s files=%d mode=%s",
            generate_request.model,
            len(generate_request.files),
            relay_mode,
        )

        if relay_mode == "buffered":
            status, payload = await relay.buffered(generate_request, is_disconnected=request.is_disconnected)
            return JSONResponse(payload, status_code=status)

        return StreamingResponse(
            relay.stream(generate_request, relay_mode, is_disconnected=request.is_disconnected),
            media_type=SSE_MEDIA_TYPE,
            headers=SSE_HEADERS,
        )

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    return app

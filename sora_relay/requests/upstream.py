"""HTTP client for the generation backend.

``UpstreamClient.open_stream`` performs one ``POST /v1/chat/completions``
call and hands the response body to the relay as an async iterator of raw
chunks. A non-success status is turned into :class:`UpstreamRejected` before
anything is streamed. Leaving the context releases the connection, which is
how an early stop (consumer gone, ``[DONE]`` seen) frees the upstream.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Optional

import aiohttp

from ..core.config import Valves
from ..core.errors import UpstreamRejected
from ..core.timing_logger import timed, timing_mark
from .debug import _debug_print_request, _read_error_response

LOGGER = logging.getLogger(__name__)


@timed
def create_http_session(valves: Valves) -> aiohttp.ClientSession:
    """Return a fresh ClientSession with the relay's timeouts for per-request use."""
    connector = aiohttp.TCPConnector(
        limit=50,
        limit_per_host=10,
        keepalive_timeout=75,
        ttl_dns_cache=300,
    )
    connect_timeout = float(valves.HTTP_CONNECT_TIMEOUT_SECONDS)
    total_timeout_value = valves.HTTP_TOTAL_TIMEOUT_SECONDS
    total_timeout = float(total_timeout_value) if total_timeout_value else None
    sock_read = float(valves.HTTP_SOCK_READ_SECONDS)
    timeout = aiohttp.ClientTimeout(total=total_timeout, connect=connect_timeout, sock_read=sock_read)
    LOGGER.debug(
        "HTTP timeouts: connect=%ss total=%s sock_read=%ss",
        connect_timeout,
        total_timeout if total_timeout is not None else "disabled",
        sock_read,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        json_serialize=json.dumps,
    )


class UpstreamClient:
    """Opens streaming chat-completion requests against the configured backend.

    When no ``http_session`` is injected, one ClientSession is created per
    :meth:`open_stream` call and closed with it, so sessions share nothing.
    """

    def __init__(
        self,
        valves: Valves,
        *,
        http_session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.valves = valves
        self._http_session = http_session
        self.logger = logger or LOGGER

    def build_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.valves.resolved_api_key()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @asynccontextmanager
    async def open_stream(self, payload: dict[str, Any]) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST ``payload`` and yield the response body as raw chunks.

        Raises:
            UpstreamRejected: the backend answered with a non-2xx status.
            aiohttp.ClientError / asyncio.TimeoutError: the request could not be made.
        """
        url = self.valves.chat_completions_url
        headers = self.build_headers()
        _debug_print_request(headers, payload, logger=self.logger)

        owns_session = self._http_session is None
        session = self._http_session or create_http_session(self.valves)
        try:
            timing_mark("upstream_request_start")
            async with session.post(url, json=payload, headers=headers) as resp:
                timing_mark("upstream_headers_received")
                if not 200 <= resp.status < 300:
                    body = await _read_error_response(resp, logger=self.logger)
                    raise UpstreamRejected(
                        status=resp.status,
                        body=body,
                        max_chars=self.valves.ERROR_BODY_MAX_CHARS,
                    )
                self.logger.debug("Upstream accepted request (%s)", resp.status)
                yield resp.content.iter_chunked(self.valves.UPSTREAM_CHUNK_SIZE)
        finally:
            if owns_session:
                await session.close()

    def opener(self, payload: dict[str, Any]) -> Callable[[], AsyncContextManager[AsyncIterator[bytes]]]:
        """Bind ``payload`` into the zero-argument opener a RelaySession expects."""

        def _open() -> AsyncContextManager[AsyncIterator[bytes]]:
            return self.open_stream(payload)

        return _open

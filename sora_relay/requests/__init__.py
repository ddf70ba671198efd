"""Request handling subsystem.

This module provides the upstream side of the relay:
- GenerateRequest / MediaAttachment: caller request models
- build_generation_payload: OpenAI-style chat-completions body
- UpstreamClient: streaming HTTP client for the generation backend
- Debug utilities: redacted request/response logging helpers
"""

from __future__ import annotations

from .debug import _debug_print_request, _read_error_response
from .payload import GenerateRequest, MediaAttachment, build_generation_payload, build_message_content
from .upstream import UpstreamClient, create_http_session

__all__ = [
    "GenerateRequest",
    "MediaAttachment",
    "build_generation_payload",
    "build_message_content",
    "UpstreamClient",
    "create_http_session",
    "_debug_print_request",
    "_read_error_response",
]

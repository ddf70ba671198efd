"""Generation request models and upstream payload construction.

Callers send ``{"model": ..., "prompt": ..., "files": [{"mimeType": ..., "data": ...}]}``.
Attachments are already base64 encoded; they are forwarded unchanged as
``data:`` URLs inside OpenAI-style content parts:

- ``image/*``  -> ``{"type": "image_url", "image_url": {"url": ...}}``
- ``video/*``  -> ``{"type": "video_url", "video_url": {"url": ...}}``
- prompt text  -> ``{"type": "text", "text": ...}`` (always last)

Other MIME types are skipped. A content list holding only the text part
collapses to the plain prompt string, which some backends require.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.timing_logger import timed

LOGGER = logging.getLogger(__name__)

ContentPart = dict[str, Any]
MessageContent = Union[str, list[ContentPart]]


class MediaAttachment(BaseModel):
    """One reference file supplied by the caller, already base64 encoded."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mime_type: str = Field(alias="mimeType", min_length=1)
    data: str = Field(min_length=1)
    name: Optional[str] = None

    @field_validator("mime_type")
    @classmethod
    def _normalize_mime_type(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_content_part(self) -> Optional[ContentPart]:
        """Return the content part for this attachment, or None for unsupported types."""
        if self.mime_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": self.data_url}}
        if self.mime_type.startswith("video/"):
            return {"type": "video_url", "video_url": {"url": self.data_url}}
        return None


class GenerateRequest(BaseModel):
    """Body of ``POST /api/generate``."""

    model_config = ConfigDict(extra="ignore")

    model: str = Field(min_length=1)
    prompt: Optional[str] = None
    files: list[MediaAttachment] = Field(default_factory=list)

    @field_validator("files", mode="before")
    @classmethod
    def _none_files_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _require_input(self) -> "GenerateRequest":
        if not (self.prompt or "").strip() and not self.files:
            raise ValueError("A prompt or at least one reference file is required")
        return self


@timed
def build_message_content(request: GenerateRequest) -> MessageContent:
    parts: list[ContentPart] = []
    for attachment in request.files:
        part = attachment.to_content_part()
        if part is None:
            LOGGER.debug("Skipping attachment %r with unsupported type %s", attachment.name, attachment.mime_type)
            continue
        parts.append(part)
    # Remix prompts are URLs; they are sent as plain text like any other prompt.
    if request.prompt:
        parts.append({"type": "text", "text": request.prompt})
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts


@timed
def build_generation_payload(request: GenerateRequest, *, stream: bool = True) -> dict[str, Any]:
    """Return the chat-completions body for ``request``.

    The relay always reads the backend as an event stream, so ``stream``
    stays True outside of tests.
    """
    return {
        "model": request.model,
        "messages": [{"role": "user", "content": build_message_content(request)}],
        "stream": stream,
    }

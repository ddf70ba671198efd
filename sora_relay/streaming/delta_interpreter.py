"""Classification of upstream frames into deltas, sentinels and noise.

One frame may carry several ``data:`` lines; each line is one payload and is
interpreted on its own, in order. Payloads are chat-completion chunks shaped
``{"choices": [{"delta": {"reasoning_content": ..., "content": ...}}]}``.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..core.errors import MalformedFrame, _message_from_error_object
from ..core.timing_logger import timed
from .constants import (
    DATA_PREFIX,
    DONE_SENTINEL,
    PROGRESS_BARE_RE,
    PROGRESS_LABELLED_RE,
    PROGRESS_MAX,
    PROGRESS_MIN,
)

LOGGER = logging.getLogger(__name__)


class FrameKind(str, enum.Enum):
    IGNORED = "ignored"
    DELTA = "delta"
    DONE = "done"
    MALFORMED = "malformed"
    UPSTREAM_ERROR = "upstream_error"


@dataclass(frozen=True, slots=True)
class DeltaEvent:
    """Parsed form of one data payload."""

    progress_text: Optional[str] = None
    content: Optional[str] = None

    @property
    def progress(self) -> Optional[int]:
        return parse_progress(self.progress_text)


@dataclass(frozen=True, slots=True)
class Interpretation:
    """Outcome of interpreting one ``data:`` payload."""

    kind: FrameKind
    delta: Optional[DeltaEvent] = None
    error_message: Optional[str] = None
    payload: Optional[str] = None


_IGNORED = Interpretation(FrameKind.IGNORED)
_DONE = Interpretation(FrameKind.DONE)


@timed
def parse_progress(text: Optional[str]) -> Optional[int]:
    """Return the integer percentage announced in ``text``, or None.

    A percentage preceded by a "progress" label wins over the first bare
    percentage. Decimals are truncated; values above 100 are not percentages
    of completion and are ignored.
    """
    if not text:
        return None
    match = PROGRESS_LABELLED_RE.search(text) or PROGRESS_BARE_RE.search(text)
    if match is None:
        return None
    value = int(float(match.group(1)))
    if value < PROGRESS_MIN or value > PROGRESS_MAX:
        return None
    return value


def _payload_of(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    return stripped[len(DATA_PREFIX) :].strip()


def _decode_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError as exc:
        raise MalformedFrame(payload, str(exc)) from exc


def _first_delta(chunk: dict[str, Any]) -> Optional[dict[str, Any]]:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if isinstance(delta, dict):
        return delta
    # Some backends put the final chunk in ``message`` rather than ``delta``.
    message = choice.get("message")
    return message if isinstance(message, dict) else None


class DeltaInterpreter:
    """Turns frames into :class:`Interpretation` values.

    The interpreter is stateless apart from diagnostic counters, so one
    instance belongs to one session.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER
        self.malformed_count = 0
        self.ignored_count = 0

    def interpret_frame(self, frame: str) -> list[Interpretation]:
        """Interpret every ``data:`` line of ``frame``; other lines produce nothing."""
        results: list[Interpretation] = []
        for line in frame.split("\n"):
            payload = _payload_of(line)
            if payload is None:
                continue
            results.append(self.interpret_payload(payload))
        return results

    interpret = interpret_frame

    @timed
    def interpret_payload(self, payload: str) -> Interpretation:
        """Classify one payload (the text after ``data:``)."""
        if payload == DONE_SENTINEL:
            return _DONE
        if not payload:
            self.ignored_count += 1
            return _IGNORED

        try:
            chunk = _decode_payload(payload)
        except MalformedFrame as exc:
            self.malformed_count += 1
            self.logger.debug("Skipping malformed frame (%s): %.120s", exc.reason, payload)
            return Interpretation(FrameKind.MALFORMED, payload=payload)

        if not isinstance(chunk, dict):
            self.ignored_count += 1
            return _IGNORED

        if chunk.get("error") is not None:
            message = _message_from_error_object(chunk) or "Upstream reported an error"
            return Interpretation(FrameKind.UPSTREAM_ERROR, error_message=message, payload=payload)

        delta = _first_delta(chunk)
        if delta is None:
            self.ignored_count += 1
            return _IGNORED

        progress_text = delta.get("reasoning_content")
        content = delta.get("content")
        event = DeltaEvent(
            progress_text=progress_text if isinstance(progress_text, str) and progress_text else None,
            content=content if isinstance(content, str) and content else None,
        )
        if event.progress_text is None and event.content is None:
            self.ignored_count += 1
            return _IGNORED
        return Interpretation(FrameKind.DELTA, delta=event)

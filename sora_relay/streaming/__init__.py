"""Streaming relay subsystem.

This package contains the per-session streaming pipeline:
- sse_parser: frame reassembly across arbitrary chunk boundaries
- delta_interpreter: frame classification, progress and content extraction
- accumulator: append-only content buffer
- result_extractor: media URL heuristics over the final document
- session: RelaySession state machine driving one upstream stream
- event_emitter: normalized event serialization and delivery
"""

from .accumulator import ContentAccumulator
from .delta_interpreter import DeltaEvent, DeltaInterpreter, FrameKind, Interpretation, parse_progress
from .event_emitter import EventEmitterHandler, NormalizedEvent, format_sse_frame
from .result_extractor import extract_result_url, require_result_url, strip_code_fence
from .session import RelaySession, SessionState
from .sse_parser import FrameBuffer, iter_frames

__all__ = [
    "ContentAccumulator",
    "DeltaEvent",
    "DeltaInterpreter",
    "FrameKind",
    "Interpretation",
    "parse_progress",
    "EventEmitterHandler",
    "NormalizedEvent",
    "format_sse_frame",
    "extract_result_url",
    "require_result_url",
    "strip_code_fence",
    "RelaySession",
    "SessionState",
    "FrameBuffer",
    "iter_frames",
]

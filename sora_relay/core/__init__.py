"""Core infrastructure module.

Foundation services required by all domains:
- Configuration schema (Valves, EncryptedStr)
- Error taxonomy
- Session logging and timing instrumentation
- Pure utility functions
"""

from .config import EncryptedStr, LOGGER, Valves
from .errors import (
    DownstreamUnavailable,
    MalformedFrame,
    NoResultFound,
    RelayError,
    UpstreamRejected,
    UpstreamStreamError,
    UpstreamTransportFailure,
)
from .logging_system import SessionLogger
from .utils import _compact_json, _safe_json_loads

__all__ = [
    "Valves",
    "EncryptedStr",
    "LOGGER",
    "RelayError",
    "UpstreamRejected",
    "UpstreamTransportFailure",
    "UpstreamStreamError",
    "NoResultFound",
    "MalformedFrame",
    "DownstreamUnavailable",
    "SessionLogger",
    "_safe_json_loads",
    "_compact_json",
]

"""Streaming relay for a Sora-style video/image generation backend.

This package provides:
- Streaming subsystem: frame reassembly, delta interpretation, result extraction
- Relay session state machine and normalized event emission
- Upstream HTTP client and request payload construction
- FastAPI surface (``POST /api/generate``) with access-code gating
"""

from typing import TYPE_CHECKING

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("sora-relay")
except Exception:
    __version__ = "0.1.0"  # Fallback if not installed as package

if TYPE_CHECKING:
    from .core.config import Valves
    from .relay import Relay
    from .streaming.session import RelaySession


def __getattr__(name: str):
    """Lazy-load the public entry points on first access."""
    if name == "Valves":
        from .core.config import Valves

        return Valves
    if name == "Relay":
        from .relay import Relay

        return Relay
    if name == "RelaySession":
        from .streaming.session import RelaySession

        return RelaySession
    if name == "create_app":
        from .api.app import create_app

        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Valves",
    "Relay",
    "RelaySession",
    "create_app",
    "__version__",
]

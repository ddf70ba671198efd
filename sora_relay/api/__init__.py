"""HTTP surface of the relay.

- create_app: FastAPI application factory
- AccessGate: shared access-code check
"""

from __future__ import annotations

from .app import create_app
from .auth import AccessGate

__all__ = [
    "create_app",
    "AccessGate",
]

"""Shared access-code gate for the generation endpoint."""

from __future__ import annotations

import hmac
from typing import Optional

ACCESS_CODE_HEADER = "x-access-code"


class AccessGate:
    """Admits callers presenting the configured access code.

    With no access code configured the gate is open.
    """

    def __init__(self, access_code: Optional[str]) -> None:
        self._access_code = (access_code or "").strip()

    @property
    def enabled(self) -> bool:
        return bool(self._access_code)

    def is_authorized(self, header_value: Optional[str]) -> bool:
        if not self.enabled:
            return True
        if not header_value:
            return False
        return hmac.compare_digest(header_value.encode("utf-8"), self._access_code.encode("utf-8"))

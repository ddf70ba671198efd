"""Configuration management for the Sora relay.

This module contains the configuration schema:
- Valves: Global configuration (upstream address, credentials, timeouts, relay mode)
- EncryptedStr: Secret value encryption wrapper
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from typing import Any, Literal, Optional, cast

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, Field, GetCoreSchemaHandler, field_validator
from pydantic_core import core_schema

from .timing_logger import timed

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

_DEFAULT_BASE_URL = "http://localhost:8000"
_CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
_SECRET_KEY_ENV = "RELAY_SECRET_KEY"

RelayMode = Literal["translate", "passthrough", "buffered"]
_ALLOWED_RELAY_MODES: tuple[str, ...] = ("translate", "passthrough", "buffered")
_ALLOWED_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# -----------------------------------------------------------------------------
# EncryptedStr
# -----------------------------------------------------------------------------


class EncryptedStr(str):
    """String wrapper that automatically encrypts/decrypts valve values."""

    _ENCRYPTION_PREFIX = "encrypted:"

    @classmethod
    def _get_encryption_key(cls) -> Optional[bytes]:
        """Return the Fernet key derived from ``RELAY_SECRET_KEY``, or ``None`` when unset."""
        secret = os.getenv(_SECRET_KEY_ENV)
        if not secret:
            return None
        hashed_key = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(hashed_key)

    @classmethod
    def encrypt(cls, value: str) -> str:
        """Encrypt ``value`` when an application secret is configured.

        Returns:
            str: Ciphertext prefixed with ``encrypted:`` or the original value.
        """
        if not value or value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value
        encrypted = Fernet(key).encrypt(value.encode())
        return f"{cls._ENCRYPTION_PREFIX}{encrypted.decode()}"

    @classmethod
    def decrypt(cls, value: str) -> str:
        """Decrypt values produced by :meth:`encrypt`.

        Returns:
            str: Decrypted plain text or the original value when keyless.
        """
        if not value or not value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value[len(cls._ENCRYPTION_PREFIX) :]
        try:
            encrypted_part = value[len(cls._ENCRYPTION_PREFIX) :]
            return Fernet(key).decrypt(encrypted_part.encode()).decode()
        except InvalidToken:
            LOGGER.warning("Failed to decrypt value: invalid token or key mismatch")
            return value
        except (ValueError, UnicodeDecodeError) as e:
            LOGGER.warning(f"Failed to decrypt value: {type(e).__name__}: {e}")
            return value

    @classmethod
    def __get_pydantic_core_schema__(
        cls, _source_type: Any, _handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        """Expose a union schema so plain strings auto-wrap as EncryptedStr."""
        return core_schema.union_schema(
            [
                core_schema.is_instance_schema(cls),
                core_schema.chain_schema(
                    [
                        core_schema.str_schema(),
                        core_schema.no_info_plain_validator_function(
                            lambda value: cls(cls.encrypt(value) if value else value)
                        ),
                    ]
                ),
            ],
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda instance: str(instance)
            ),
        )


# -----------------------------------------------------------------------------
# Environment defaults
# -----------------------------------------------------------------------------


@timed
def _default_api_key() -> EncryptedStr:
    """Return the SORA_API_KEY env default as EncryptedStr."""
    return EncryptedStr((os.getenv("SORA_API_KEY") or "").strip())


@timed
def _default_access_code() -> EncryptedStr:
    return EncryptedStr((os.getenv("ACCESS_CODE") or "").strip())


@timed
def _resolve_log_level_default() -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    """Normalize env-provided log level to the allowed literal set."""
    value = (os.getenv("GLOBAL_LOG_LEVEL") or "INFO").strip().upper()
    if value not in _ALLOWED_LOG_LEVELS:
        value = "INFO"
    return cast(Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], value)


@timed
def _resolve_relay_mode_default() -> RelayMode:
    value = (os.getenv("RELAY_MODE") or "translate").strip().lower()
    if value not in _ALLOWED_RELAY_MODES:
        value = "translate"
    return cast(RelayMode, value)


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------


class Valves(BaseModel):
    """Global relay configuration shared across sessions."""

    # Connection & Auth
    SORA_BASE_URL: str = Field(
        default=((os.getenv("SORA_BASE_URL") or "").strip() or _DEFAULT_BASE_URL),
        validate_default=True,
        description="Base URL of the generation backend. `/v1/chat/completions` is appended.",
    )
    SORA_API_KEY: EncryptedStr = Field(
        default_factory=_default_api_key,
        description="Bearer credential for the generation backend. Defaults to the SORA_API_KEY environment variable.",
    )
    ACCESS_CODE: EncryptedStr = Field(
        default_factory=_default_access_code,
        description="Optional shared secret callers must send in the `x-access-code` header. Empty disables the gate.",
    )

    # Relay behaviour
    RELAY_MODE: RelayMode = Field(
        default_factory=_resolve_relay_mode_default,
        description=(
            "Default downstream shape. `translate` emits normalized progress/result/error events, "
            "`passthrough` forwards upstream frames verbatim, `buffered` answers one JSON object."
        ),
    )
    UPSTREAM_CHUNK_SIZE: int = Field(
        default=4096,
        ge=64,
        le=1024 * 1024,
        description="Maximum bytes read from the upstream body per chunk.",
    )
    ERROR_BODY_MAX_CHARS: int = Field(
        default=500,
        ge=32,
        le=20000,
        description="Maximum characters of an upstream error body surfaced in an `error` event.",
    )

    # Timeouts
    HTTP_CONNECT_TIMEOUT_SECONDS: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait for the TCP/TLS connection to the backend before failing.",
    )
    HTTP_TOTAL_TIMEOUT_SECONDS: Optional[int] = Field(
        default=1800,
        ge=1,
        description="Upper bound (seconds) on a whole relay session. Set to null to disable.",
    )
    HTTP_SOCK_READ_SECONDS: int = Field(
        default=300,
        ge=1,
        description="Idle read timeout (seconds): the longest tolerated gap between two upstream chunks.",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_resolve_log_level_default,
        description="Minimum console log level for relay sessions. Defaults to GLOBAL_LOG_LEVEL.",
    )
    SESSION_LOG_MAX_LINES: int = Field(
        default=2000,
        ge=100,
        le=200000,
        description="Maximum structured log events retained in memory per session.",
    )
    ENABLE_TIMING_LOG: bool = Field(
        default=False,
        description="Write function enter/exit timings for each session to TIMING_LOG_FILE.",
    )
    TIMING_LOG_FILE: str = Field(
        default="logs/timing.jsonl",
        description="JSONL file receiving timing records when ENABLE_TIMING_LOG is on.",
    )

    @field_validator("SORA_BASE_URL")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = (value or "").strip()
        return value.rstrip("/") or _DEFAULT_BASE_URL

    @property
    def chat_completions_url(self) -> str:
        return f"{self.SORA_BASE_URL}{_CHAT_COMPLETIONS_PATH}"

    @timed
    def resolved_api_key(self) -> str:
        """Return the decrypted upstream credential (empty when unset)."""
        return EncryptedStr.decrypt(str(self.SORA_API_KEY or "")).strip()

    @timed
    def resolved_access_code(self) -> str:
        return EncryptedStr.decrypt(str(self.ACCESS_CODE or "")).strip()

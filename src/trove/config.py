"""
Runtime configuration for Trove.

Defaults mirror the hosted service. Every field can be overridden from the
environment through ``TroveConfig.from_env()``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional


CHUNK_SIZE = 10_000_000  # 10MB
MAX_CONCURRENT_UPLOADS = 3
MAX_CONCURRENT_CHUNKS = 3
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0
MAX_FILE_NAME_LENGTH = 255
FREE_STORAGE_BYTES = 5_000_000_000  # 5GB free allocation
IDLE_TIMEOUT_SECONDS = 15 * 60
IDLE_WARNING_SECONDS = 13 * 60
STORAGE_BUCKET = "vault_files"

_ENV_PREFIX = "TROVE_"


@dataclass
class TroveConfig:
    """Application configuration."""

    chunk_size: int = CHUNK_SIZE
    max_concurrent_uploads: int = MAX_CONCURRENT_UPLOADS
    max_concurrent_chunks: int = MAX_CONCURRENT_CHUNKS
    max_retries: int = MAX_RETRIES
    retry_delay: float = RETRY_DELAY_SECONDS
    idle_timeout: float = IDLE_TIMEOUT_SECONDS
    idle_warning: float = IDLE_WARNING_SECONDS
    free_storage_bytes: int = FREE_STORAGE_BYTES

    storage_root: Path = field(default_factory=lambda: Path.home() / ".trove")

    # Hosted backend; the local store is used when either is missing
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    storage_bucket: str = STORAGE_BUCKET
    request_timeout: float = 30.0

    log_level: str = "INFO"

    def __post_init__(self):
        self.storage_root = Path(self.storage_root).expanduser()
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.max_concurrent_uploads < 1 or self.max_concurrent_chunks < 1:
            raise ValueError("concurrency caps must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.idle_warning > self.idle_timeout:
            raise ValueError("idle_warning must not exceed idle_timeout")

    @property
    def is_hosted(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "TroveConfig":
        """
        Build a config from ``TROVE_*`` environment variables.

        Unknown variables are ignored; explicit ``overrides`` win over the
        environment.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, raw)
        values.update(overrides)
        return cls(**values)


_INT_FIELDS = {
    "chunk_size",
    "max_concurrent_uploads",
    "max_concurrent_chunks",
    "max_retries",
    "free_storage_bytes",
}
_FLOAT_FIELDS = {"retry_delay", "idle_timeout", "idle_warning", "request_timeout"}


def _coerce(name: str, raw: str):
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {_ENV_PREFIX}{name.upper()}: {raw!r}") from e
    if name == "storage_root":
        return Path(raw)
    return raw


def build_store(config: TroveConfig):
    """Return the store the config points at: hosted REST or local SQLite."""
    if config.is_hosted:
        from trove.store.rest import RestVaultStore

        return RestVaultStore(
            base_url=config.supabase_url,
            anon_key=config.supabase_anon_key,
            bucket=config.storage_bucket,
            timeout=config.request_timeout,
        )

    from trove.store.local import LocalVaultStore

    return LocalVaultStore(config.storage_root)

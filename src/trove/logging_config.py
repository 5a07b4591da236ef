"""Lightweight logging setup for Trove."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from .config import TroveConfig


def configure_logging(level: int | str | None = None, config: Optional[TroveConfig] = None) -> None:
    # Root logger is configured once; an explicit level beats config.log_level
    if level is None:
        level = config.log_level.upper() if config is not None else logging.INFO
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )
    # httpx request lines at INFO carry the vault id in query filters
    logging.getLogger("httpx").setLevel(max(logging.getLogger().getEffectiveLevel(), logging.WARNING))


def redact_vault_id(vault_id: str | None) -> str:
    """Shorten a vault id for log output; the full value is a bearer credential."""
    if not vault_id:
        return "<none>"
    return vault_id[:16] + "..."

"""
Settings loading for Konduit.

Reads RuntimeSettings from ``KONDUIT_*`` environment variables.
"""

from __future__ import annotations

import os
from functools import lru_cache

from .schemas import DEFAULT_ERROR_PREFIX, RuntimeSettings


def _optional_float(value: str | None) -> float | None:
    if value is None or value.strip() == "":
        return None
    return float(value)


@lru_cache()
def get_settings() -> RuntimeSettings:
    """
    Get runtime settings from environment.

    Uses lru_cache for singleton pattern.
    """
    return RuntimeSettings(
        base_path=os.getenv("KONDUIT_BASE_PATH", "."),
        database_path=os.getenv("KONDUIT_DATABASE_PATH", ":memory:"),
        http_timeout=float(os.getenv("KONDUIT_HTTP_TIMEOUT", "30")),
        resolve_timeout=_optional_float(os.getenv("KONDUIT_RESOLVE_TIMEOUT")),
        error_prefix=os.getenv("KONDUIT_ERROR_PREFIX", DEFAULT_ERROR_PREFIX),
        channel_subprotocol=os.getenv("KONDUIT_CHANNEL_SUBPROTOCOL", "konduit"),
    )

"""Database connection helpers."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from ...config import load_settings
from .schema import ENTRIES_METADATA, ENTRIES_TABLE, build_entries_table

__all__ = [
    "ENTRIES_METADATA",
    "ENTRIES_TABLE",
    "build_entries_table",
    "get_engine",
]


@lru_cache()
def get_engine() -> Engine:
    """Return the process-wide engine built from the active settings profile."""

    settings = load_settings()
    return create_engine(settings.database_url, echo=False, future=True)

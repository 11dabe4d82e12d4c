"""Database helpers for ChatDesk."""

from __future__ import annotations

import sqlalchemy as sa

from .config import DatabaseSettings, get_database_settings
from .models import create_tables, metadata


def create_engine_from_settings(settings: DatabaseSettings | None = None) -> sa.engine.Engine:
    """Build an engine for *settings* (defaults to the environment)."""

    resolved = settings or get_database_settings()
    return sa.create_engine(resolved.url, **resolved.engine_options())


__all__ = [
    "DatabaseSettings",
    "get_database_settings",
    "create_engine_from_settings",
    "create_tables",
    "metadata",
]

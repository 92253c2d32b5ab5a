"""Persistence layer for sagaline workflow instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagalineConfig, load_config
from .inmemory import InMemoryInstanceStore
from .models import EventType, SagaEvent
from .replay import apply_event, rebuild_instance
from .repository import InstanceStore
from .sqlite import SQLiteInstanceStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresInstanceStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresInstanceStore = None  # type: ignore

_store_instance: InstanceStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[SagalineConfig] = None
) -> InstanceStore:
    """Factory function to obtain an instance store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``SAGALINE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SAGALINE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryInstanceStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteInstanceStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresInstanceStore is None:
            raise RuntimeError("Postgres support not available")
        _store_instance = PostgresInstanceStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "EventType",
    "SagaEvent",
    "InstanceStore",
    "InMemoryInstanceStore",
    "SQLiteInstanceStore",
    "PostgresInstanceStore",
    "apply_event",
    "rebuild_instance",
    "get_store",
]

"""Persistence layer for procession executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ProcessionConfig, load_config
from .inmemory import InMemoryExecutionStore
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ExecutionStatus,
    WorkflowExecution,
)
from .repository import ExecutionStore
from .sqlite import SQLiteExecutionStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresExecutionStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresExecutionStore = None  # type: ignore


def get_store(
    database_url: Optional[str] = None, config: Optional[ProcessionConfig] = None
) -> ExecutionStore:
    """Factory function to obtain an execution store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``PROCESSION_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.

    A new store is built on every call; the application constructs one at
    startup and injects it into the engine.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PROCESSION_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryExecutionStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteExecutionStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresExecutionStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresExecutionStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "ExecutionStatus",
    "ExecutionStore",
    "WorkflowExecution",
    "InMemoryExecutionStore",
    "SQLiteExecutionStore",
    "PostgresExecutionStore",
    "get_store",
]

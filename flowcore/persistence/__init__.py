"""Persistence layer for flowcore executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowcoreConfig
from .inmemory import InMemoryWorkflowStore
from .operations import (
    AppendEvent,
    CancelTimers,
    InsertTimer,
    RecordActionResult,
    UpdateExecution,
    WriteOp,
)
from .postgres import PostgresWorkflowStore
from .repository import WorkflowStore
from .sqlite import SQLiteWorkflowStore


def get_store(
    database_url: Optional[str] = None, config: Optional[FlowcoreConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWCORE_DATABASE_URL`` or
    ``DATABASE_URL``, or from the given configuration. When no database is
    configured, an in-memory store is returned. Every call builds a new
    store; callers own its lifetime and close it.
    """

    database_url = (
        database_url
        or os.getenv("FLOWCORE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        return InMemoryWorkflowStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        return PostgresWorkflowStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "AppendEvent",
    "CancelTimers",
    "InsertTimer",
    "RecordActionResult",
    "UpdateExecution",
    "WriteOp",
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SQLiteWorkflowStore",
    "PostgresWorkflowStore",
    "get_store",
]

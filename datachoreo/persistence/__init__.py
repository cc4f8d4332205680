"""Persistence layer for execution and compliance state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DatachoreoConfig, load_config
from .inmemory import InMemoryExecutionStore
from .models import (
    Approval,
    ApprovalState,
    ComplianceAnchor,
    ComplianceEvent,
    CredentialMetadata,
    IdempotencyRecord,
    RiskLevel,
    Run,
    RunStatus,
    Step,
    Workflow,
)
from .postgres import PostgresExecutionStore
from .repository import ExecutionStore
from .sqlite import SQLiteExecutionStore

_store_instance: ExecutionStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[DatachoreoConfig] = None
) -> ExecutionStore:
    """Factory function to obtain an execution store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``DATACHOREO_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DATACHOREO_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _store_instance = InMemoryExecutionStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteExecutionStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _store_instance = PostgresExecutionStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


def reset_store() -> None:
    """Forget the cached store instance."""
    global _store_instance
    _store_instance = None


__all__ = [
    "Approval",
    "ApprovalState",
    "ComplianceAnchor",
    "ComplianceEvent",
    "CredentialMetadata",
    "ExecutionStore",
    "IdempotencyRecord",
    "InMemoryExecutionStore",
    "PostgresExecutionStore",
    "RiskLevel",
    "Run",
    "RunStatus",
    "SQLiteExecutionStore",
    "Step",
    "Workflow",
    "get_store",
    "reset_store",
]

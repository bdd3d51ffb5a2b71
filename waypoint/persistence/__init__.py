"""Persistence layer for waypoint runs, the durable step log and hooks.

Backends are chosen by URL:

- no URL: :class:`InMemoryRunRepository` (state dies with the process)
- ``sqlite://<path>``: :class:`SQLiteRunRepository`
- ``postgres://`` or ``postgresql://``: ``PostgresRunRepository`` (asyncpg)
"""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import HookRecord, HookState, Run, RunStatus, StepRecord, StepStatus
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

_repository_instance: RunRepository | None = None


def _open(database_url: Optional[str]) -> RunRepository:
    if not database_url:
        return InMemoryRunRepository()
    scheme, _, rest = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteRunRepository(rest)
    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresRunRepository

        return PostgresRunRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> RunRepository:
    """Return the process-wide run repository, opening it on first use.

    An explicit ``database_url`` or ``config`` always opens a new repository
    and makes it the shared one. Otherwise the URL comes from
    ``WAYPOINT_DATABASE_URL``, ``DATABASE_URL`` or the loaded config.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    if database_url is None:
        config = config or load_config()
        database_url = (
            os.getenv("WAYPOINT_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or config.database_url
        )

    _repository_instance = _open(database_url)
    return _repository_instance


__all__ = [
    "HookRecord",
    "HookState",
    "InMemoryRunRepository",
    "Run",
    "RunRepository",
    "RunStatus",
    "SQLiteRunRepository",
    "StepRecord",
    "StepStatus",
    "get_repository",
]

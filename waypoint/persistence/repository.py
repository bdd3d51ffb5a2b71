"""Repository abstraction for run, step and hook persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from .models import HookRecord, Run, RunStatus, StepRecord


class RunRepository(Protocol):
    """Protocol for persistence backends.

    Step records form the append-only durable log; hook transitions are
    compare-and-set so that each hook settles at most once.
    """

    async def create_run(self, run: Run) -> None:
        """Persist a new run."""

    async def get_run(self, run_id: str) -> Run | None:
        """Retrieve a run by id."""

    async def update_run(self, run_id: str, **fields: Any) -> Run | None:
        """Apply field updates to a run and bump ``updated_at``."""

    async def list_runs(self, status: RunStatus | None = None) -> list[Run]:
        """Return runs, optionally filtered by status."""

    async def append_step(self, record: StepRecord) -> StepRecord:
        """Append a step record; first writer wins per (run, key, generation)."""

    async def get_step(self, run_id: str, step_key: str) -> StepRecord | None:
        """Return the completed record for a key, else the newest failed one."""

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        """Return the run's step records in append order."""

    async def create_hook(self, hook: HookRecord) -> HookRecord:
        """Insert a hook unless the token exists; return the stored hook."""

    async def get_hook(self, token: str) -> HookRecord | None:
        """Retrieve a hook by token."""

    async def set_hook_deadline(self, token: str, expires_at: datetime) -> HookRecord | None:
        """Set ``expires_at`` if not already set; return the stored hook."""

    async def resolve_hook(
        self, token: str, payload: dict, now: datetime | None = None
    ) -> bool:
        """Transition pending -> resolved.

        Return ``False`` if the hook is not pending, or if ``now`` is given and
        the hook's ``expires_at`` is at or before it.
        """

    async def expire_hook(self, token: str) -> bool:
        """Transition pending -> expired. Return ``False`` if not pending."""

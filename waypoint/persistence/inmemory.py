"""In-memory implementation of the run repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Tuple

from .models import HookRecord, HookState, Run, RunStatus, StepRecord, StepStatus, utcnow
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every method completes without
    awaiting, so each call is atomic on the event loop.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._steps: Dict[str, List[StepRecord]] = {}
        self._step_index: Dict[Tuple[str, str, int], StepRecord] = {}
        self._hooks: Dict[str, HookRecord] = {}

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)
        self._steps.setdefault(run.run_id, [])

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def update_run(self, run_id: str, **fields: Any) -> Run | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        updated = run.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._runs[run_id] = updated
        return updated.model_copy(deep=True)

    async def list_runs(self, status: RunStatus | None = None) -> list[Run]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at)
        return [
            r.model_copy(deep=True)
            for r in runs
            if status is None or r.status == status
        ]

    # ------------------------------------------------------------------
    async def append_step(self, record: StepRecord) -> StepRecord:
        key = (record.run_id, record.step_key, record.generation)
        existing = self._step_index.get(key)
        if existing is not None:
            return existing.model_copy(deep=True)
        stored = record.model_copy(deep=True)
        self._step_index[key] = stored
        self._steps.setdefault(record.run_id, []).append(stored)
        return stored.model_copy(deep=True)

    async def get_step(self, run_id: str, step_key: str) -> StepRecord | None:
        candidates = [s for s in self._steps.get(run_id, []) if s.step_key == step_key]
        if not candidates:
            return None
        for step in candidates:
            if step.status == StepStatus.COMPLETED:
                return step.model_copy(deep=True)
        newest = max(candidates, key=lambda s: s.generation)
        return newest.model_copy(deep=True)

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        return [s.model_copy(deep=True) for s in self._steps.get(run_id, [])]

    # ------------------------------------------------------------------
    async def create_hook(self, hook: HookRecord) -> HookRecord:
        existing = self._hooks.get(hook.token)
        if existing is None:
            existing = hook.model_copy(deep=True)
            self._hooks[hook.token] = existing
        return existing.model_copy(deep=True)

    async def get_hook(self, token: str) -> HookRecord | None:
        hook = self._hooks.get(token)
        return hook.model_copy(deep=True) if hook else None

    async def set_hook_deadline(self, token: str, expires_at: datetime) -> HookRecord | None:
        hook = self._hooks.get(token)
        if hook is None:
            return None
        if hook.expires_at is None:
            hook.expires_at = expires_at
        return hook.model_copy(deep=True)

    async def resolve_hook(
        self, token: str, payload: dict, now: datetime | None = None
    ) -> bool:
        hook = self._hooks.get(token)
        if hook is None or hook.state != HookState.PENDING:
            return False
        if now is not None and hook.expires_at is not None and hook.expires_at <= now:
            return False
        hook.state = HookState.RESOLVED
        hook.payload = dict(payload)
        hook.resolved_at = utcnow()
        return True

    async def expire_hook(self, token: str) -> bool:
        hook = self._hooks.get(token)
        if hook is None or hook.state != HookState.PENDING:
            return False
        hook.state = HookState.EXPIRED
        hook.resolved_at = utcnow()
        return True

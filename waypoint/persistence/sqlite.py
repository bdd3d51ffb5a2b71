"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import HookRecord, HookState, Run, RunStatus, StepRecord, utcnow
from .repository import RunRepository

_RUN_COLUMNS = (
    "run_id",
    "workflow_name",
    "status",
    "input_args",
    "deployment_id",
    "output",
    "error",
    "generation",
    "resume_at",
    "waiting_on",
    "trace_carrier",
    "created_at",
    "updated_at",
)
_JSON_COLUMNS = {"input_args", "output", "error", "trace_carrier"}
_DATETIME_COLUMNS = {"resume_at", "created_at", "updated_at"}


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    if column in _DATETIME_COLUMNS:
        return value.isoformat()
    if column == "status":
        return RunStatus(value).value
    return value


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _json(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteRunRepository(RunRepository):
    """Persist run state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                status TEXT NOT NULL,
                input_args TEXT,
                deployment_id TEXT,
                output TEXT,
                error TEXT,
                generation INTEGER NOT NULL DEFAULT 1,
                resume_at TEXT,
                waiting_on TEXT,
                trace_carrier TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                step_key TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                attempts INTEGER NOT NULL,
                generation INTEGER NOT NULL,
                completed_at TEXT NOT NULL,
                UNIQUE (run_id, step_key, generation)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS hooks (
                token TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_key TEXT NOT NULL,
                schema_name TEXT,
                payload_schema TEXT,
                state TEXT NOT NULL,
                payload TEXT,
                expires_at TEXT,
                created_at TEXT NOT NULL,
                resolved_at TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            status=RunStatus(row["status"]),
            input_args=_json(row["input_args"]),
            deployment_id=row["deployment_id"],
            output=_json(row["output"]),
            error=_json(row["error"]),
            generation=row["generation"],
            resume_at=_dt(row["resume_at"]),
            waiting_on=row["waiting_on"],
            trace_carrier=_json(row["trace_carrier"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            run_id=row["run_id"],
            step_key=row["step_key"],
            step_name=row["step_name"],
            status=row["status"],
            input=_json(row["input"]),
            output=_json(row["output"]),
            error=_json(row["error"]),
            attempts=row["attempts"],
            generation=row["generation"],
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _row_to_hook(row: sqlite3.Row) -> HookRecord:
        return HookRecord(
            token=row["token"],
            run_id=row["run_id"],
            step_key=row["step_key"],
            schema_name=row["schema_name"],
            payload_schema=_json(row["payload_schema"]),
            state=HookState(row["state"]),
            payload=_json(row["payload"]),
            expires_at=_dt(row["expires_at"]),
            created_at=_dt(row["created_at"]),
            resolved_at=_dt(row["resolved_at"]),
        )

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: Run) -> None:
        data = run.model_dump()
        placeholders = ", ".join("?" for _ in _RUN_COLUMNS)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO runs ({', '.join(_RUN_COLUMNS)}) VALUES ({placeholders})",
            *(_encode(col, data[col]) for col in _RUN_COLUMNS),
        )

    async def get_run(self, run_id: str) -> Run | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM runs WHERE run_id = ?", run_id
        )
        return self._row_to_run(row) if row else None

    async def update_run(self, run_id: str, **fields: Any) -> Run | None:
        unknown = set(fields) - set(_RUN_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{col} = ?" for col in fields)
        await asyncio.to_thread(
            self._execute,
            f"UPDATE runs SET {assignments} WHERE run_id = ?",
            *(_encode(col, value) for col, value in fields.items()),
            run_id,
        )
        return await self.get_run(run_id)

    async def list_runs(self, status: RunStatus | None = None) -> list[Run]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM runs ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM runs WHERE status = ? ORDER BY created_at",
                RunStatus(status).value,
            )
        return [self._row_to_run(r) for r in rows]

    # ------------------------------------------------------------------
    # Durable log
    async def append_step(self, record: StepRecord) -> StepRecord:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO step_log
                (run_id, step_key, step_name, status, input, output, error,
                 attempts, generation, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            record.run_id,
            record.step_key,
            record.step_name,
            record.status.value,
            json.dumps(record.input),
            json.dumps(record.output),
            json.dumps(record.error) if record.error is not None else None,
            record.attempts,
            record.generation,
            record.completed_at.isoformat(),
        )
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM step_log WHERE run_id = ? AND step_key = ? AND generation = ?",
            record.run_id,
            record.step_key,
            record.generation,
        )
        return self._row_to_step(row)

    async def get_step(self, run_id: str, step_key: str) -> StepRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT * FROM step_log WHERE run_id = ? AND step_key = ?
            ORDER BY (status = 'completed') DESC, generation DESC
            LIMIT 1
            """,
            run_id,
            step_key,
        )
        return self._row_to_step(row) if row else None

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_log WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [self._row_to_step(r) for r in rows]

    # ------------------------------------------------------------------
    # Hooks
    async def create_hook(self, hook: HookRecord) -> HookRecord:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO hooks
                (token, run_id, step_key, schema_name, payload_schema, state, payload,
                 expires_at, created_at, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            hook.token,
            hook.run_id,
            hook.step_key,
            hook.schema_name,
            json.dumps(hook.payload_schema) if hook.payload_schema is not None else None,
            hook.state.value,
            json.dumps(hook.payload) if hook.payload is not None else None,
            hook.expires_at.isoformat() if hook.expires_at else None,
            hook.created_at.isoformat(),
            hook.resolved_at.isoformat() if hook.resolved_at else None,
        )
        return await self.get_hook(hook.token)

    async def get_hook(self, token: str) -> HookRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM hooks WHERE token = ?", token
        )
        return self._row_to_hook(row) if row else None

    async def set_hook_deadline(self, token: str, expires_at: datetime) -> HookRecord | None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE hooks SET expires_at = ? WHERE token = ? AND expires_at IS NULL",
            expires_at.isoformat(),
            token,
        )
        return await self.get_hook(token)

    async def resolve_hook(
        self, token: str, payload: dict, now: datetime | None = None
    ) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE hooks SET state = ?, payload = ?, resolved_at = ?
            WHERE token = ? AND state = ?
              AND (? IS NULL OR expires_at IS NULL OR expires_at > ?)
            """,
            HookState.RESOLVED.value,
            json.dumps(payload),
            utcnow().isoformat(),
            token,
            HookState.PENDING.value,
            now.isoformat() if now else None,
            now.isoformat() if now else None,
        )
        return changed == 1

    async def expire_hook(self, token: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE hooks SET state = ?, resolved_at = ? WHERE token = ? AND state = ?",
            HookState.EXPIRED.value,
            utcnow().isoformat(),
            token,
            HookState.PENDING.value,
        )
        return changed == 1

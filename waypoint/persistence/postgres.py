"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

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


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    return int(status.rsplit(" ", 1)[-1])


class PostgresRunRepository(RunRepository):
    """Persist run state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                status TEXT NOT NULL,
                input_args JSONB,
                deployment_id TEXT,
                output JSONB,
                error JSONB,
                generation INTEGER NOT NULL DEFAULT 1,
                resume_at TIMESTAMPTZ,
                waiting_on TEXT,
                trace_carrier JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_log (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_key TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error JSONB,
                attempts INTEGER NOT NULL,
                generation INTEGER NOT NULL,
                completed_at TIMESTAMPTZ NOT NULL,
                UNIQUE (run_id, step_key, generation)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS hooks (
                token TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_key TEXT NOT NULL,
                schema_name TEXT,
                payload_schema JSONB,
                state TEXT NOT NULL,
                payload JSONB,
                expires_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                resolved_at TIMESTAMPTZ
            )
            """
        )

    @staticmethod
    def _row_to_run(row: asyncpg.Record) -> Run:
        data = dict(row)
        data["status"] = RunStatus(data["status"])
        return Run(**data)

    @staticmethod
    def _row_to_step(row: asyncpg.Record) -> StepRecord:
        data = dict(row)
        data.pop("id", None)
        return StepRecord(**data)

    @staticmethod
    def _row_to_hook(row: asyncpg.Record) -> HookRecord:
        return HookRecord(**dict(row))

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> None:
        data = run.model_dump()
        data["status"] = RunStatus(data["status"]).value
        placeholders = ", ".join(f"${i}" for i in range(1, len(_RUN_COLUMNS) + 1))
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO runs ({', '.join(_RUN_COLUMNS)}) VALUES ({placeholders})",
                *(data[col] for col in _RUN_COLUMNS),
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM runs WHERE run_id = $1", run_id)
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def update_run(self, run_id: str, **fields: Any) -> Run | None:
        unknown = set(fields) - set(_RUN_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")
        fields["updated_at"] = utcnow()
        if "status" in fields:
            fields["status"] = RunStatus(fields["status"]).value
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(fields, start=1))
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"UPDATE runs SET {assignments} WHERE run_id = ${len(fields) + 1} RETURNING *",
                *fields.values(),
                run_id,
            )
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def list_runs(self, status: RunStatus | None = None) -> list[Run]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch("SELECT * FROM runs ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM runs WHERE status = $1 ORDER BY created_at",
                    RunStatus(status).value,
                )
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    # ------------------------------------------------------------------
    async def append_step(self, record: StepRecord) -> StepRecord:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_log
                    (run_id, step_key, step_name, status, input, output, error,
                     attempts, generation, completed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (run_id, step_key, generation) DO NOTHING
                """,
                record.run_id,
                record.step_key,
                record.step_name,
                record.status.value,
                record.input,
                record.output,
                record.error,
                record.attempts,
                record.generation,
                record.completed_at,
            )
            row = await conn.fetchrow(
                "SELECT * FROM step_log WHERE run_id = $1 AND step_key = $2 AND generation = $3",
                record.run_id,
                record.step_key,
                record.generation,
            )
        finally:
            await conn.close()
        return self._row_to_step(row)

    async def get_step(self, run_id: str, step_key: str) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT * FROM step_log WHERE run_id = $1 AND step_key = $2
                ORDER BY (status = 'completed') DESC, generation DESC
                LIMIT 1
                """,
                run_id,
                step_key,
            )
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_log WHERE run_id = $1 ORDER BY id", run_id
            )
        finally:
            await conn.close()
        return [self._row_to_step(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_hook(self, hook: HookRecord) -> HookRecord:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO hooks
                    (token, run_id, step_key, schema_name, payload_schema, state, payload,
                     expires_at, created_at, resolved_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (token) DO NOTHING
                """,
                hook.token,
                hook.run_id,
                hook.step_key,
                hook.schema_name,
                hook.payload_schema,
                hook.state.value,
                hook.payload,
                hook.expires_at,
                hook.created_at,
                hook.resolved_at,
            )
            row = await conn.fetchrow("SELECT * FROM hooks WHERE token = $1", hook.token)
        finally:
            await conn.close()
        return self._row_to_hook(row)

    async def get_hook(self, token: str) -> HookRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM hooks WHERE token = $1", token)
        finally:
            await conn.close()
        return self._row_to_hook(row) if row else None

    async def set_hook_deadline(self, token: str, expires_at: datetime) -> HookRecord | None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE hooks SET expires_at = $1 WHERE token = $2 AND expires_at IS NULL",
                expires_at,
                token,
            )
            row = await conn.fetchrow("SELECT * FROM hooks WHERE token = $1", token)
        finally:
            await conn.close()
        return self._row_to_hook(row) if row else None

    async def resolve_hook(
        self, token: str, payload: dict, now: datetime | None = None
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE hooks SET state = $1, payload = $2, resolved_at = $3
                WHERE token = $4 AND state = $5
                  AND ($6::timestamptz IS NULL OR expires_at IS NULL OR expires_at > $6)
                """,
                HookState.RESOLVED.value,
                payload,
                utcnow(),
                token,
                HookState.PENDING.value,
                now,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def expire_hook(self, token: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE hooks SET state = $1, resolved_at = $2 WHERE token = $3 AND state = $4",
                HookState.EXPIRED.value,
                utcnow(),
                token,
                HookState.PENDING.value,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

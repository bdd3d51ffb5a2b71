"""Data models for persisted run state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.FAILED, RunStatus.COMPLETED)


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class HookState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class Run(BaseModel):
    """One durable execution instance of a workflow."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    status: RunStatus = RunStatus.PENDING
    input_args: Any = None
    deployment_id: Optional[str] = None
    output: Any = None
    error: Optional[dict[str, Any]] = None
    generation: int = 1
    resume_at: Optional[datetime] = None
    waiting_on: Optional[str] = None
    trace_carrier: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StepRecord(BaseModel):
    """Record of a terminal step outcome. Never mutated once appended."""

    run_id: str
    step_key: str
    step_name: str
    status: StepStatus
    input: Any = None
    output: Any = None
    error: Optional[dict[str, Any]] = None
    attempts: int = 1
    generation: int = 1
    completed_at: datetime = Field(default_factory=utcnow)


class HookRecord(BaseModel):
    """Token-addressed slot awaiting one external resolution."""

    token: str
    run_id: str
    step_key: str
    schema_name: Optional[str] = None
    payload_schema: Optional[dict[str, Any]] = None
    state: HookState = HookState.PENDING
    payload: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

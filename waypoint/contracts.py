"""Message contracts exchanged between schedulers and workers."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

RunMessageReason = Literal["start", "resume", "timer", "restart", "recover"]


def _new_id() -> str:
    return uuid.uuid4().hex


class TraceCarrier(BaseModel):
    """Serialized tracing context carried across queue boundaries.

    A resumed or restarted run continues the trace it was started in; each
    hop gets its own span whose parent is the span that enqueued it.
    """

    trace_id: str = Field(default_factory=_new_id)
    span_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_span_id: Optional[str] = None
    baggage: Dict[str, str] = Field(default_factory=dict)

    def child(self, **baggage: str) -> "TraceCarrier":
        """Return a new span in the same trace, parented on this one."""
        merged = {**self.baggage, **baggage}
        return TraceCarrier(
            trace_id=self.trace_id,
            parent_span_id=self.span_id,
            baggage=merged,
        )

    def serialize(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def deserialize(cls, data: Optional[Dict[str, Any]]) -> "TraceCarrier":
        """Rebuild a carrier, starting a fresh trace when none was recorded."""
        if not data:
            return cls()
        return cls.model_validate(data)


class RunMessage(BaseModel):
    """Envelope published on the run queue to (re)drive a run."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    workflow_name: str
    deployment_id: Optional[str] = None
    reason: RunMessageReason = "start"
    trace_carrier: TraceCarrier = Field(default_factory=TraceCarrier)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "RunMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class ProgressEvent(BaseModel):
    """Machine-readable progress line emitted by a workflow."""

    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str
    namespace: str
    step: str
    message: str
    data: Any = None

    def to_line(self) -> str:
        """Render the event as one JSON line."""
        return self.model_dump_json() + "\n"

"""Orchestration function runner: one replay pass over a workflow body."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from pydantic_core import to_jsonable_python

from .context import Clock, WorkflowContext
from .errors import WorkflowSuspended
from .events import EventSink
from .hooks import HookRegistry
from .persistence import RunRepository
from .persistence.models import Run, utcnow
from .steps import StepExecutor
from .workflow import WorkflowDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completed:
    """The body returned; ``output`` is its JSON-normalized result."""

    output: Any


@dataclass(frozen=True)
class Suspended:
    """The body parked on a hook or timer at ``step_key``."""

    step_key: str
    resume_at: Optional[datetime] = None
    waiting_on: Optional[str] = None


RunOutcome = Union[Completed, Suspended]


class OrchestrationRunner:
    """Executes workflow bodies from the start, fast-forwarding recorded steps."""

    def __init__(
        self,
        repository: RunRepository,
        executor: StepExecutor,
        hooks: HookRegistry,
        event_sink: Optional[EventSink] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._hooks = hooks
        self._event_sink = event_sink
        self._clock = clock

    def context_for(self, run: Run) -> WorkflowContext:
        return WorkflowContext(
            run,
            repository=self._repository,
            executor=self._executor,
            hooks=self._hooks,
            event_sink=self._event_sink,
            clock=self._clock,
        )

    async def execute(self, definition: WorkflowDefinition, run: Run) -> RunOutcome:
        """Run one pass of ``definition`` for ``run``.

        Any exception other than a suspension propagates and fails the run.
        """
        ctx = self.context_for(run)
        workflow_input = definition.load_input(run.input_args)
        try:
            result = await definition.invoke(ctx, workflow_input)
        except WorkflowSuspended as suspended:
            logger.info(
                f"Run {run.run_id} suspended at {suspended.step_key}"
                + (f" until {suspended.resume_at.isoformat()}" if suspended.resume_at else "")
                + (f" waiting on hook {suspended.waiting_on}" if suspended.waiting_on else "")
            )
            return Suspended(
                step_key=suspended.step_key,
                resume_at=suspended.resume_at,
                waiting_on=suspended.waiting_on,
            )
        return Completed(output=to_jsonable_python(result))

"""Workflow context: the only way a workflow body touches the outside world.

Every operation allocates its step key synchronously when called, before
the returned awaitable is scheduled. Fan-out such as
``ctx.gather(*(ctx.step(quote, c) for c in carriers))`` therefore gets the
same keys on every replay regardless of completion order.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from .errors import FatalError, HookExpired, WorkflowSuspended
from .events import EventSink
from .contracts import ProgressEvent
from .hooks import Hook, HookDefinition, HookRegistry
from .persistence import RunRepository
from .persistence.models import HookState, Run, StepRecord, StepStatus, utcnow
from .steps import StepDefinition, StepExecutor
from .utils.durations import Duration, parse_duration

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_HOOK_WON = "hook"
_TIMER_WON = "timeout"
_EXPIRED = "expired"


class WorkflowContext:
    """Per-run handle passed to workflow bodies."""

    def __init__(
        self,
        run: Run,
        repository: RunRepository,
        executor: StepExecutor,
        hooks: HookRegistry,
        event_sink: Optional[EventSink] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.run = run
        self._repository = repository
        self._executor = executor
        self._hooks = hooks
        self._event_sink = event_sink
        self._clock = clock
        self._sequence = 0
        self._emit_step = StepDefinition(self._deliver_event, name="emit", max_retries=3)
        self._now_step = StepDefinition(self._read_clock, name="now", max_retries=0)

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def _next_key(self, name: str) -> str:
        self._sequence += 1
        return f"{self._sequence}:{name}"

    # ------------------------------------------------------------------
    # Steps
    def step(self, definition: StepDefinition, *args: Any, **kwargs: Any) -> Awaitable[Any]:
        """Run ``definition`` durably; its output is recorded once per run."""
        if not isinstance(definition, StepDefinition):
            raise TypeError(f"{definition!r} is not a step; decorate it with @step")
        key = self._next_key(definition.name)
        return self._executor.execute(self.run, key, definition, args, kwargs)

    async def gather(self, *awaitables: Awaitable[Any]) -> list[Any]:
        """Fork-join: wait for every branch, then fail if any branch failed."""
        results = await asyncio.gather(*awaitables, return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, WorkflowSuspended):
                raise failure
        if failures:
            raise failures[0]
        return list(results)

    def now(self) -> Awaitable[datetime]:
        """Wall-clock time, recorded so replays observe the same value."""
        return self.step(self._now_step)

    async def _read_clock(self) -> datetime:
        return self._clock()

    def emit(
        self, namespace: str, step: str, message: str, data: Any = None
    ) -> Awaitable[Any]:
        """Publish a progress event to the run's event sink exactly once."""
        return self.step(self._emit_step, namespace, step, message, data)

    async def _deliver_event(
        self, namespace: str, step: str, message: str, data: Any = None
    ) -> dict:
        event = ProgressEvent(
            run_id=self.run_id, namespace=namespace, step=step, message=message, data=data
        )
        if self._event_sink is not None:
            await self._event_sink.emit(event)
        return {"ts": event.ts.isoformat()}

    # ------------------------------------------------------------------
    # Sleep
    def sleep(self, duration: Duration) -> Awaitable[None]:
        """Suspend the run for ``duration`` (``"30s"``, ``"1h"``, seconds...)."""
        seconds = parse_duration(duration)
        key = self._next_key("sleep")
        return self._sleep(key, seconds)

    async def _sleep(self, key: str, seconds: float) -> None:
        record = await self._repository.get_step(self.run_id, key)
        if record is None:
            wake_at = self._clock() + timedelta(seconds=seconds)
            record = await self._repository.append_step(
                StepRecord(
                    run_id=self.run_id,
                    step_key=key,
                    step_name="sleep",
                    status=StepStatus.COMPLETED,
                    input={"seconds": seconds},
                    output={"wake_at": wake_at.isoformat()},
                    generation=self.run.generation,
                )
            )
        wake_at = datetime.fromisoformat(record.output["wake_at"])
        if self._clock() < wake_at:
            raise WorkflowSuspended(key, resume_at=wake_at)

    # ------------------------------------------------------------------
    # Hooks
    def create_hook(
        self, definition: HookDefinition[Any], token: Optional[str] = None
    ) -> Awaitable[Hook[Any]]:
        """Register a pending hook. ``token`` defaults to one derived from the run."""
        key = self._next_key(f"hook:{definition.name}")
        return self._create_hook(key, definition, token)

    async def _create_hook(
        self, key: str, definition: HookDefinition[Any], token: Optional[str]
    ) -> Hook[Any]:
        record = await self._hooks.create(self.run, key, definition, token)
        return Hook(token=record.token, definition=definition, step_key=key)

    def wait_for(
        self,
        hook: Hook[Any],
        timeout: Optional[Duration] = None,
        on_timeout: Any = None,
    ) -> Awaitable[Any]:
        """Wait for ``hook``, or for ``timeout`` if given, whichever comes first.

        When the timer wins the hook is expired, so a late resolution is
        rejected, and ``on_timeout`` is returned. Without a timeout an
        externally expired hook raises :class:`HookExpired`.
        """
        seconds = parse_duration(timeout) if timeout is not None else None
        key = self._next_key(f"wait:{hook.definition.name}")
        return self._wait_for(key, hook, seconds, on_timeout)

    async def _wait_for(
        self, key: str, hook: Hook[Any], seconds: Optional[float], on_timeout: Any
    ) -> Any:
        record = await self._repository.get_step(self.run_id, key)
        if record is None:
            outcome = await self._settle(key, hook, seconds)
            record = await self._repository.append_step(
                StepRecord(
                    run_id=self.run_id,
                    step_key=key,
                    step_name=f"wait:{hook.definition.name}",
                    status=StepStatus.COMPLETED,
                    input={"token": hook.token, "timeout": seconds},
                    output=outcome,
                    generation=self.run.generation,
                )
            )

        outcome = record.output
        if outcome["winner"] == _HOOK_WON:
            return hook.definition.load(outcome["payload"])
        if outcome["winner"] == _EXPIRED:
            raise HookExpired(hook.token)
        logger.info(f"Hook {hook.token} timed out for run_id={self.run_id}")
        return on_timeout

    async def _settle(self, key: str, hook: Hook[Any], seconds: Optional[float]) -> dict:
        current = await self._repository.get_hook(hook.token)
        if current is None:
            raise FatalError(f"Hook {hook.token} does not exist")

        if current.state == HookState.PENDING and seconds is not None:
            if current.expires_at is None:
                current = await self._repository.set_hook_deadline(
                    hook.token, self._clock() + timedelta(seconds=seconds)
                )
            if self._clock() >= current.expires_at:
                await self._repository.expire_hook(hook.token)
                # a resolution may have landed first
                current = await self._repository.get_hook(hook.token)

        if current.state == HookState.RESOLVED:
            return {"winner": _HOOK_WON, "payload": current.payload}
        if current.state == HookState.EXPIRED:
            return {"winner": _TIMER_WON if seconds is not None else _EXPIRED}
        raise WorkflowSuspended(key, resume_at=current.expires_at, waiting_on=hook.token)

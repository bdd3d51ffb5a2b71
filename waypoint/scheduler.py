"""Run scheduler: owns run state and drives replay passes from the queue."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Set, Union

from .config import WaypointConfig, load_config
from .context import Clock
from .contracts import RunMessage, RunMessageReason, TraceCarrier
from .errors import (
    InvalidRunState,
    RunFailedError,
    RunNotFound,
    WorkflowNotFound,
    describe_error,
)
from .events import EventSink, LoggingEventSink
from .hooks import HookRegistry
from .persistence import RunRepository, get_repository
from .persistence.models import HookRecord, HookState, Run, RunStatus, StepRecord, utcnow
from .runner import OrchestrationRunner, Suspended
from .steps import StepExecutor
from .transports import BaseTransport, get_transport
from .utils import retry as retry_utils
from .workflow import WORKFLOW_REGISTRY, WorkflowDefinition, get_workflow

logger = logging.getLogger(__name__)


class RunHandle:
    """Reference to a started run."""

    def __init__(self, scheduler: "RunScheduler", run_id: str) -> None:
        self._scheduler = scheduler
        self.run_id = run_id

    def __repr__(self) -> str:
        return f"RunHandle(run_id={self.run_id!r})"

    async def status(self) -> RunStatus:
        run = await self._scheduler.get_run(self.run_id)
        return run.status

    async def wait(
        self,
        statuses: Iterable[RunStatus] = (RunStatus.COMPLETED, RunStatus.FAILED),
        timeout: Optional[float] = None,
        poll_interval: float = 0.02,
    ) -> Run:
        """Poll until the run reaches one of ``statuses``.

        Raises:
            asyncio.TimeoutError: The run did not get there within ``timeout``.
        """
        wanted = set(statuses)

        async def _poll() -> Run:
            while True:
                run = await self._scheduler.get_run(self.run_id)
                if run.status in wanted:
                    return run
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(_poll(), timeout)

    async def result(self, timeout: Optional[float] = None) -> Any:
        """Wait for a terminal state and return the workflow's output.

        Raises:
            RunFailedError: The run ended in ``failed``.
        """
        run = await self.wait(timeout=timeout)
        if run.status == RunStatus.FAILED:
            raise RunFailedError(run.run_id, run.error)
        return run.output


class RunScheduler:
    """Starts, resumes, restarts and executes durable runs."""

    def __init__(
        self,
        repository: Optional[RunRepository] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[WaypointConfig] = None,
        event_sink: Optional[EventSink] = None,
        workflows: Optional[Dict[str, WorkflowDefinition]] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or load_config()
        self._repository = repository or get_repository(config=self.config)
        self._transport = transport or get_transport(config=self.config)
        self._workflows = workflows if workflows is not None else WORKFLOW_REGISTRY
        self._clock = clock
        self._queue = self.config.scheduler.queue
        self._deployment_id = self.config.scheduler.deployment_id

        self.hooks = HookRegistry(
            self._repository, on_settled=self._on_hook_settled, clock=clock
        )
        self._executor = StepExecutor(self._repository, self.config.retry)
        self._runner = OrchestrationRunner(
            self._repository,
            self._executor,
            self.hooks,
            event_sink=event_sink or LoggingEventSink(),
            clock=clock,
        )

        # per-run locks, dropped once no pass holds or awaits them
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        # consecutive failed passes per run, reset by a successful pass
        self._redeliveries: Dict[str, int] = {}

    @property
    def repository(self) -> RunRepository:
        return self._repository

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Make ``definition`` runnable by this scheduler."""
        self._workflows[definition.name] = definition
        return definition

    def _resolve_workflow(self, workflow: Union[str, WorkflowDefinition]) -> WorkflowDefinition:
        if isinstance(workflow, WorkflowDefinition):
            if workflow.name not in self._workflows:
                self.register(workflow)
            return workflow
        return get_workflow(workflow, self._workflows)

    @asynccontextmanager
    async def _run_lock(self, run_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(run_id, asyncio.Lock())
        self._lock_users[run_id] = self._lock_users.get(run_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[run_id] -= 1
            if not self._lock_users[run_id]:
                del self._lock_users[run_id]
                del self._locks[run_id]

    async def _enqueue(self, run: Run, reason: RunMessageReason, carrier: TraceCarrier) -> None:
        message = RunMessage(
            run_id=run.run_id,
            workflow_name=run.workflow_name,
            deployment_id=run.deployment_id,
            reason=reason,
            trace_carrier=carrier,
        )
        await self._transport.publish(self._queue, message)
        logger.debug(
            f"Enqueued run_id={run.run_id} reason={reason} trace_id={carrier.trace_id}"
        )

    # ------------------------------------------------------------------
    # Public operations
    async def start(
        self, workflow: Union[str, WorkflowDefinition], workflow_input: Any = None
    ) -> RunHandle:
        """Create a pending run and enqueue it for execution.

        Raises:
            WorkflowNotFound: ``workflow`` names no registered workflow.
            pydantic.ValidationError: ``workflow_input`` does not match the
                workflow's input type.
        """
        definition = self._resolve_workflow(workflow)
        input_args = definition.dump_input(definition.load_input(workflow_input))
        carrier = TraceCarrier(baggage={"workflow": definition.name})
        run = Run(
            workflow_name=definition.name,
            input_args=input_args,
            deployment_id=self._deployment_id,
            trace_carrier=carrier.serialize(),
        )
        await self._repository.create_run(run)
        await self._enqueue(run, "start", carrier)
        logger.info(
            f"Started workflow {definition.name} run_id={run.run_id} trace_id={carrier.trace_id}"
        )
        return RunHandle(self, run.run_id)

    def handle(self, run_id: str) -> RunHandle:
        return RunHandle(self, run_id)

    async def get_run(self, run_id: str) -> Run:
        """Raises: RunNotFound."""
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        await self.get_run(run_id)
        return await self._repository.list_steps(run_id)

    async def resolve_hook(self, token: str, payload: Dict[str, Any]) -> str:
        """Resolve a hook and resume its run. See :meth:`HookRegistry.resolve`."""
        return await self.hooks.resolve(token, payload)

    async def expire_hook(self, token: str) -> str:
        """Expire a hook and resume its run. See :meth:`HookRegistry.expire`."""
        return await self.hooks.expire(token)

    async def restart(self, run_id: str) -> Run:
        """Move a failed run back to ``running`` and replay it.

        Completed steps are served from the log; failed steps of earlier
        generations run again.

        Raises:
            RunNotFound: Unknown run.
            InvalidRunState: The run is not ``failed``.
        """
        async with self._run_lock(run_id):
            run = await self.get_run(run_id)
            if run.status != RunStatus.FAILED:
                raise InvalidRunState(
                    f"Workflow is not in a failed state. Current status: {run.status.value}"
                )
            carrier = TraceCarrier.deserialize(run.trace_carrier).child(reason="restart")
            run = await self._repository.update_run(
                run_id,
                status=RunStatus.RUNNING,
                error=None,
                generation=run.generation + 1,
                resume_at=None,
                waiting_on=None,
                trace_carrier=carrier.serialize(),
            )
        await self._enqueue(run, "restart", carrier)
        logger.info(
            f"Restarted run_id={run_id} generation={run.generation} trace_id={carrier.trace_id}"
        )
        return run

    async def recover(self) -> int:
        """Re-drive runs interrupted by a process restart. Returns the count."""
        recovered = 0
        for run in await self._repository.list_runs():
            carrier = TraceCarrier.deserialize(run.trace_carrier).child(reason="recover")
            if run.status in (RunStatus.PENDING, RunStatus.RUNNING):
                await self._enqueue(run, "recover", carrier)
                recovered += 1
            elif run.status == RunStatus.WAITING:
                if run.waiting_on:
                    hook = await self._repository.get_hook(run.waiting_on)
                    if hook is not None and hook.state != HookState.PENDING:
                        await self._enqueue(run, "recover", carrier)
                        recovered += 1
                        continue
                if run.resume_at is not None:
                    self._arm_timer(run)
                    recovered += 1
        logger.info(f"Recovered {recovered} run(s)")
        return recovered

    # ------------------------------------------------------------------
    # Wake-ups
    async def _on_hook_settled(self, hook: HookRecord) -> None:
        run = await self._repository.get_run(hook.run_id)
        if run is None or run.status.is_terminal:
            return
        carrier = TraceCarrier.deserialize(run.trace_carrier).child(hook=hook.token)
        await self._enqueue(run, "resume", carrier)

    def _arm_timer(self, run: Run) -> None:
        self._cancel_timer(run.run_id)
        delay = max(0.0, (run.resume_at - self._clock()).total_seconds())
        timer = asyncio.create_task(self._fire_timer(run, delay))
        timer.add_done_callback(lambda task: self._forget_timer(run.run_id, task))
        self._timers[run.run_id] = timer

    def _forget_timer(self, run_id: str, task: asyncio.Task) -> None:
        if self._timers.get(run_id) is task:
            del self._timers[run_id]

    def _cancel_timer(self, run_id: str) -> None:
        timer = self._timers.pop(run_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _fire_timer(self, run: Run, delay: float) -> None:
        await asyncio.sleep(delay)
        self._forget_timer(run.run_id, asyncio.current_task())
        carrier = TraceCarrier.deserialize(run.trace_carrier).child(reason="timer")
        await self._enqueue(run, "timer", carrier)

    # ------------------------------------------------------------------
    # Execution
    async def process(self, message: RunMessage) -> Optional[Run]:
        """Execute one replay pass for the run named by ``message``."""
        async with self._run_lock(message.run_id):
            run = await self._repository.get_run(message.run_id)
            if run is None:
                logger.warning(f"Dropping message for unknown run_id={message.run_id}")
                return None
            if run.status.is_terminal:
                logger.debug(f"Skipping run_id={run.run_id}: already {run.status.value}")
                return run

            definition = self._workflows.get(run.workflow_name)
            if definition is None:
                error = WorkflowNotFound(f"Workflow {run.workflow_name!r} is not registered")
                return await self._fail(run, error)

            run = await self._repository.update_run(
                run.run_id,
                status=RunStatus.RUNNING,
                resume_at=None,
                waiting_on=None,
                trace_carrier=message.trace_carrier.serialize(),
            )
            logger.info(
                f"Executing workflow {run.workflow_name} run_id={run.run_id} "
                f"reason={message.reason} trace_id={message.trace_carrier.trace_id}"
            )

            try:
                outcome = await self._runner.execute(definition, run)
            except Exception as e:
                return await self._fail(run, e)

            if isinstance(outcome, Suspended):
                run = await self._repository.update_run(
                    run.run_id,
                    status=RunStatus.WAITING,
                    resume_at=outcome.resume_at,
                    waiting_on=outcome.waiting_on,
                )
                if outcome.resume_at is not None:
                    self._arm_timer(run)
                return run

            self._cancel_timer(run.run_id)
            run = await self._repository.update_run(
                run.run_id, status=RunStatus.COMPLETED, output=outcome.output
            )
            logger.info(f"Workflow {run.workflow_name} completed for run_id={run.run_id}")
            return run

    async def _fail(self, run: Run, error: Exception) -> Run:
        self._cancel_timer(run.run_id)
        reason = describe_error(error, getattr(error, "step_key", None))
        logger.error(
            f"Workflow {run.workflow_name} failed for run_id={run.run_id}: "
            f"{reason['type']}: {reason['message']}"
        )
        return await self._repository.update_run(
            run.run_id, status=RunStatus.FAILED, error=reason
        )

    async def _handle(self, raw_message: Any, message: RunMessage, slots: asyncio.Semaphore) -> None:
        try:
            await self.process(message)
        except Exception:
            failures = self._redeliveries.get(message.run_id, 0) + 1
            self._redeliveries[message.run_id] = failures
            delay = retry_utils.compute_backoff(
                failures,
                base=self.config.retry.backoff_base,
                jitter=self.config.retry.backoff_jitter,
                cap=self.config.retry.max_backoff,
            )
            logger.exception(
                f"Error processing run_id={message.run_id}; requeueing in {delay:.2f}s"
            )
            await retry_utils.schedule_retry(delay)
            await self._transport.nack(raw_message)
        else:
            self._redeliveries.pop(message.run_id, None)
            await self._transport.ack(raw_message)
        finally:
            slots.release()

    async def serve(self, lifespan: Optional[float] = None) -> None:
        """Consume the run queue, executing up to ``max_concurrent_runs`` at once."""
        slots = asyncio.Semaphore(self.config.scheduler.max_concurrent_runs)
        logger.info(f"Worker listening on queue {self._queue}")
        try:
            async for raw_message, message in self._transport.subscribe(
                self._queue, lifespan=lifespan
            ):
                await slots.acquire()
                task = asyncio.create_task(self._handle(raw_message, message, slots))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        finally:
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending timers and disconnect the transport.

        Waiting runs are re-armed by :meth:`recover` on the next start.
        """
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        await self._transport.disconnect()

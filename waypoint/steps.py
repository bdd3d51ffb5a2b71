"""Step definitions and the retrying, replay-aware step executor."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar, get_type_hints

from pydantic import TypeAdapter
from pydantic_core import to_jsonable_python

from .config import RetryConfig
from .errors import FatalError, RetryableError, StepFailed, describe_error
from .persistence import RunRepository
from .persistence.models import Run, StepRecord, StepStatus
from .utils import retry as retry_utils

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class StepDefinition:
    """A named unit of work whose terminal outcome is recorded once per run."""

    def __init__(
        self,
        fn: Callable[..., Any],
        name: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.fn = fn
        self.name = name or fn.__name__
        self.max_retries = max_retries
        self._adapter: Optional[TypeAdapter] = None
        self._adapter_resolved = False
        functools.update_wrapper(self, fn)

    def __repr__(self) -> str:
        return f"StepDefinition(name={self.name!r}, max_retries={self.max_retries!r})"

    @property
    def output_adapter(self) -> Optional[TypeAdapter]:
        """Adapter for the declared return type, or ``None`` when undeclared."""
        if not self._adapter_resolved:
            self._adapter_resolved = True
            try:
                hints = get_type_hints(self.fn)
            except NameError:
                hints = {}
            return_type = hints.get("return")
            if return_type not in (None, type(None), Any):
                self._adapter = TypeAdapter(return_type)
        return self._adapter

    def load_output(self, stored: Any) -> Any:
        """Rehydrate a JSON output from the durable log."""
        adapter = self.output_adapter
        if adapter is None or stored is None:
            return stored
        return adapter.validate_python(stored)

    async def invoke(self, *args: Any, **kwargs: Any) -> Any:
        """Call the body once; sync bodies run in a worker thread."""
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(*args, **kwargs)
        return await asyncio.to_thread(self.fn, *args, **kwargs)


def step(
    fn: Optional[F] = None,
    *,
    name: Optional[str] = None,
    max_retries: Optional[int] = None,
) -> Any:
    """Declare a durable step.

    Can be used bare (``@step``) or with options
    (``@step(name="quote", max_retries=5)``). ``max_retries`` counts extra
    attempts after the first; ``None`` uses the configured default.
    """

    def decorator(func: F) -> StepDefinition:
        return StepDefinition(func, name=name, max_retries=max_retries)

    if fn is not None:
        return decorator(fn)
    return decorator


class StepExecutor:
    """Runs steps with replay short-circuiting and retry classification."""

    def __init__(
        self, repository: RunRepository, retry: Optional[RetryConfig] = None
    ) -> None:
        self._repository = repository
        self._retry = retry or RetryConfig()

    def _delay_for(self, error: Exception, attempt: int) -> float:
        if isinstance(error, RetryableError) and error.retry_after is not None:
            return error.retry_after
        return retry_utils.compute_backoff(
            attempt,
            base=self._retry.backoff_base,
            jitter=self._retry.backoff_jitter,
            cap=self._retry.max_backoff,
        )

    async def execute(
        self,
        run: Run,
        step_key: str,
        definition: StepDefinition,
        args: Tuple[Any, ...] = (),
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Return the step's output, executing the body only if not yet recorded.

        Raises:
            StepFailed: The step failed fatally or exhausted its retries.
        """
        kwargs = kwargs or {}
        record = await self._repository.get_step(run.run_id, step_key)
        if record is not None:
            if record.status == StepStatus.COMPLETED:
                logger.debug(f"Replaying step {step_key} for run_id={run.run_id}")
                return definition.load_output(record.output)
            if record.generation == run.generation:
                error = record.error or {}
                raise StepFailed(
                    step_key,
                    error.get("message", f"Step {definition.name} failed"),
                    attempts=record.attempts,
                    cause_type=error.get("type"),
                )

        step_input = to_jsonable_python(
            {"args": list(args), "kwargs": kwargs}, serialize_unknown=True
        )
        max_retries = (
            definition.max_retries
            if definition.max_retries is not None
            else self._retry.max_retries
        )

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await definition.invoke(*args, **kwargs)
                output = to_jsonable_python(result)
            except FatalError as e:
                failure: Exception = e
                break
            except Exception as e:
                if attempt > max_retries:
                    failure = e
                    break
                delay = self._delay_for(e, attempt)
                logger.warning(
                    f"Step {step_key} attempt {attempt} failed for run_id={run.run_id}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await retry_utils.schedule_retry(delay)
                continue

            stored = await self._repository.append_step(
                StepRecord(
                    run_id=run.run_id,
                    step_key=step_key,
                    step_name=definition.name,
                    status=StepStatus.COMPLETED,
                    input=step_input,
                    output=output,
                    attempts=attempt,
                    generation=run.generation,
                )
            )
            if stored.status == StepStatus.FAILED:
                raise StepFailed(
                    step_key,
                    (stored.error or {}).get("message", "step failed"),
                    attempts=stored.attempts,
                )
            logger.info(
                f"Step {step_key} completed for run_id={run.run_id} after {attempt} attempt(s)"
            )
            return definition.load_output(stored.output)

        error = describe_error(failure, step_key)
        error["attempts"] = attempt
        await self._repository.append_step(
            StepRecord(
                run_id=run.run_id,
                step_key=step_key,
                step_name=definition.name,
                status=StepStatus.FAILED,
                input=step_input,
                error=error,
                attempts=attempt,
                generation=run.generation,
            )
        )
        logger.error(
            f"Step {step_key} failed for run_id={run.run_id} after {attempt} attempt(s): {failure}"
        )
        raise StepFailed(
            step_key,
            str(failure),
            attempts=attempt,
            cause_type=type(failure).__name__,
        ) from failure

"""Exception hierarchy for waypoint workflows."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from .utils.durations import Duration, parse_duration


class WaypointError(Exception):
    """Base class for all waypoint errors."""


class FatalError(WaypointError):
    """Non-retryable failure. Terminates the run when it escapes a step."""


class RetryableError(WaypointError):
    """Transient failure. The step is retried, optionally after ``retry_after``."""

    def __init__(self, message: str, retry_after: Optional[Duration] = None) -> None:
        super().__init__(message)
        self.retry_after = (
            parse_duration(retry_after) if retry_after is not None else None
        )


class StepFailed(FatalError):
    """A step exhausted its retries or failed fatally."""

    def __init__(
        self,
        step_key: str,
        message: str,
        attempts: int = 1,
        cause_type: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.step_key = step_key
        self.attempts = attempts
        self.cause_type = cause_type


class HookConflict(FatalError):
    """A hook token is already owned by a different run."""


class HookExpired(FatalError):
    """A hook awaited without a timeout was expired externally."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Hook {token} expired before it was resolved")
        self.token = token


class WorkflowNotFound(FatalError):
    """No workflow is registered under the requested name."""


class HookNotFound(WaypointError):
    """Token is unknown or the hook is no longer pending."""

    def __init__(self, token: str) -> None:
        super().__init__(f"Hook {token} not found or already settled")
        self.token = token


class HookValidationError(WaypointError):
    """Resolution payload does not match the hook schema."""

    def __init__(self, token: str, errors: list[dict[str, Any]]) -> None:
        super().__init__(f"Invalid payload for hook {token}")
        self.token = token
        self.errors = errors


class RunNotFound(WaypointError):
    """No run exists with the requested id."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class InvalidRunState(WaypointError):
    """The requested transition is not allowed from the run's current status."""


class RunFailedError(WaypointError):
    """Raised by ``RunHandle.result`` when the run ended in ``failed``."""

    def __init__(self, run_id: str, error: Optional[dict[str, Any]]) -> None:
        error = error or {}
        super().__init__(
            f"Run {run_id} failed: {error.get('type', 'Error')}: {error.get('message', '')}"
        )
        self.run_id = run_id
        self.error = error


class WorkflowSuspended(WaypointError):
    """Raised inside a workflow body to park the run until it can advance.

    Never surfaced to callers: the runner turns it into a ``waiting`` run.
    """

    def __init__(
        self,
        step_key: str,
        resume_at: Optional[datetime] = None,
        waiting_on: Optional[str] = None,
    ) -> None:
        super().__init__(f"Suspended at {step_key}")
        self.step_key = step_key
        self.resume_at = resume_at
        self.waiting_on = waiting_on


def describe_error(exc: BaseException, step_key: Optional[str] = None) -> dict[str, Any]:
    """Build the structured failure reason stored on a failed run."""
    if isinstance(exc, StepFailed):
        return {
            "type": exc.cause_type or type(exc).__name__,
            "message": str(exc),
            "step_key": exc.step_key,
            "attempts": exc.attempts,
        }
    return {"type": type(exc).__name__, "message": str(exc), "step_key": step_key}

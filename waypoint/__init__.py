"""waypoint: Durable, resumable workflow orchestration with human-in-the-loop hooks."""

from .config import WaypointConfig, load_config
from .context import WorkflowContext
from .errors import (
    FatalError,
    HookExpired,
    HookNotFound,
    HookValidationError,
    RetryableError,
    StepFailed,
    WaypointError,
)
from .events import InMemoryEventSink, LoggingEventSink
from .hooks import define_hook
from .persistence import get_repository
from .persistence.models import RunStatus
from .scheduler import RunHandle, RunScheduler
from .steps import step
from .transports import get_transport
from .workflow import workflow

__version__ = "0.1.0"
__all__ = [
    "FatalError",
    "HookExpired",
    "HookNotFound",
    "HookValidationError",
    "InMemoryEventSink",
    "LoggingEventSink",
    "RetryableError",
    "RunHandle",
    "RunScheduler",
    "RunStatus",
    "StepFailed",
    "WaypointConfig",
    "WaypointError",
    "WorkflowContext",
    "define_hook",
    "get_repository",
    "get_transport",
    "load_config",
    "step",
    "workflow",
]

"""Workflow definitions and the process-wide workflow registry."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, get_type_hints

from pydantic import TypeAdapter
from pydantic_core import to_jsonable_python

from .errors import WorkflowNotFound

logger = logging.getLogger(__name__)

# Registry of all defined workflows keyed by name
WORKFLOW_REGISTRY: Dict[str, "WorkflowDefinition"] = {}

WorkflowBody = Callable[..., Awaitable[Any]]


class WorkflowDefinition:
    """An orchestration body ``async def body(ctx, input)`` registered by name."""

    def __init__(self, fn: WorkflowBody, name: Optional[str] = None) -> None:
        if not inspect.iscoroutinefunction(fn):
            raise TypeError(f"Workflow {fn.__name__} must be an async function")
        self.fn = fn
        self.name = name or fn.__name__
        params = list(inspect.signature(fn).parameters.values())
        if not params:
            raise TypeError(f"Workflow {self.name} must accept a context argument")
        self.takes_input = len(params) > 1
        self._input_adapter: Optional[TypeAdapter] = None
        if self.takes_input:
            hint = get_type_hints(fn).get(params[1].name)
            if hint is not None and hint is not Any:
                self._input_adapter = TypeAdapter(hint)
        WORKFLOW_REGISTRY[self.name] = self

    def __repr__(self) -> str:
        return f"WorkflowDefinition(name={self.name!r})"

    def load_input(self, data: Any) -> Any:
        """Validate raw input against the declared input type."""
        if self._input_adapter is None:
            return data
        return self._input_adapter.validate_python(data)

    def dump_input(self, value: Any) -> Any:
        return to_jsonable_python(value)

    async def invoke(self, ctx: Any, workflow_input: Any) -> Any:
        if self.takes_input:
            return await self.fn(ctx, workflow_input)
        return await self.fn(ctx)


def workflow(fn: Optional[WorkflowBody] = None, *, name: Optional[str] = None) -> Any:
    """Register an orchestration body. Usable bare or as ``@workflow(name=...)``."""

    def decorator(func: WorkflowBody) -> WorkflowDefinition:
        definition = WorkflowDefinition(func, name=name)
        logger.debug(f"Registered workflow {definition.name}")
        return definition

    if fn is not None:
        return decorator(fn)
    return decorator


def get_workflow(
    name: str, registry: Optional[Dict[str, WorkflowDefinition]] = None
) -> WorkflowDefinition:
    """Look up a registered workflow.

    Raises:
        WorkflowNotFound: No workflow with this name is registered.
    """
    registry = registry if registry is not None else WORKFLOW_REGISTRY
    try:
        return registry[name]
    except KeyError:
        raise WorkflowNotFound(f"Workflow {name!r} is not registered") from None

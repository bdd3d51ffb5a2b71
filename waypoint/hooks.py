"""Typed hooks: token-addressed slots resolved once by an external actor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Type, TypeVar

from jsonschema import Draft202012Validator
from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from .errors import HookConflict, HookNotFound, HookValidationError
from .persistence import RunRepository
from .persistence.models import HookRecord, HookState, Run, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Registry of all defined hooks keyed by name, used to validate resolutions
HOOK_REGISTRY: Dict[str, "HookDefinition[Any]"] = {}


class HookDefinition(Generic[T]):
    """Named hook type whose resolution payload must match ``schema``."""

    def __init__(self, schema: Type[T], name: Optional[str] = None) -> None:
        self.schema = schema
        self.name = name or getattr(schema, "__name__", str(schema))
        self._adapter: TypeAdapter[T] = TypeAdapter(schema)
        self.json_schema: Dict[str, Any] = self._adapter.json_schema()
        existing = HOOK_REGISTRY.get(self.name)
        if existing is not None and existing.json_schema != self.json_schema:
            raise ValueError(
                f"Hook {self.name!r} is already defined with a different schema"
            )
        HOOK_REGISTRY[self.name] = self

    def __repr__(self) -> str:
        return f"HookDefinition(name={self.name!r})"

    def validate(self, token: str, payload: Any) -> T:
        try:
            return self._adapter.validate_python(payload)
        except ValidationError as e:
            raise HookValidationError(token, e.errors(include_url=False)) from e

    def dump(self, value: T) -> dict:
        return to_jsonable_python(value)

    def load(self, payload: Any) -> T:
        return self._adapter.validate_python(payload)


def define_hook(schema: Type[T], name: Optional[str] = None) -> HookDefinition[T]:
    """Define a hook whose resolution payload is validated against ``schema``."""
    return HookDefinition(schema, name=name)


@dataclass(frozen=True)
class Hook(Generic[T]):
    """Handle to a created hook, awaited through ``WorkflowContext.wait_for``."""

    token: str
    definition: HookDefinition[T]
    step_key: str


HookSettledCallback = Callable[[HookRecord], Awaitable[None]]


def validate_against_schema(token: str, schema: Dict[str, Any], payload: Any) -> None:
    """Check ``payload`` against a stored JSON schema.

    Used when the resolving process has not imported the hook's definition.

    Raises:
        HookValidationError: The payload violates the schema.
    """
    validator = Draft202012Validator(schema)
    errors = sorted(
        validator.iter_errors(payload), key=lambda e: [str(p) for p in e.absolute_path]
    )
    if errors:
        raise HookValidationError(
            token,
            [
                {"loc": tuple(err.absolute_path), "msg": err.message, "type": err.validator}
                for err in errors
            ],
        )


class HookRegistry:
    """Creates, resolves and expires hooks against the repository.

    Resolution is validated against the hook's definition when this process
    has imported it, else against the JSON schema stored with the hook. A
    hook whose deadline has passed can no longer be resolved: the attempt
    expires it instead, so the waiting run continues with its timeout.
    """

    def __init__(
        self,
        repository: RunRepository,
        on_settled: Optional[HookSettledCallback] = None,
        definitions: Optional[Dict[str, HookDefinition[Any]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._on_settled = on_settled
        self._definitions = definitions if definitions is not None else HOOK_REGISTRY
        self._clock = clock

    async def create(
        self,
        run: Run,
        step_key: str,
        definition: HookDefinition[Any],
        token: Optional[str] = None,
    ) -> HookRecord:
        """Register a pending slot, reusing it when replay creates it again.

        Raises:
            HookConflict: The token already belongs to another run.
        """
        token = token or f"{run.run_id}:{step_key}"
        stored = await self._repository.create_hook(
            HookRecord(
                token=token,
                run_id=run.run_id,
                step_key=step_key,
                schema_name=definition.name,
                payload_schema=definition.json_schema,
            )
        )
        if stored.run_id != run.run_id:
            raise HookConflict(f"Hook token {token} is already used by run {stored.run_id}")
        logger.debug(f"Hook {token} registered for run_id={run.run_id}")
        return stored

    def _validate(self, hook: HookRecord, payload: Dict[str, Any]) -> Dict[str, Any]:
        definition = self._definitions.get(hook.schema_name or "")
        if definition is not None:
            return definition.dump(definition.validate(hook.token, payload))
        if hook.payload_schema is None:
            raise HookValidationError(
                hook.token,
                [
                    {
                        "loc": (),
                        "msg": f"no schema available for hook type {hook.schema_name!r}",
                        "type": "missing_schema",
                    }
                ],
            )
        validate_against_schema(hook.token, hook.payload_schema, payload)
        return payload

    def _is_overdue(self, hook: HookRecord) -> bool:
        return hook.expires_at is not None and self._clock() >= hook.expires_at

    async def _expire_overdue(self, hook: HookRecord) -> None:
        if await self._repository.expire_hook(hook.token):
            logger.info(f"Hook {hook.token} passed its deadline; expired for run_id={hook.run_id}")
            if self._on_settled is not None:
                await self._on_settled(hook)

    async def resolve(self, token: str, payload: Dict[str, Any]) -> str:
        """Deliver ``payload`` to the hook and return the waiting run's id.

        Raises:
            HookNotFound: Unknown token, the hook already resolved or expired,
                or its deadline has passed.
            HookValidationError: Payload does not match the schema; the hook
                stays pending.
        """
        hook = await self._repository.get_hook(token)
        if hook is None or hook.state != HookState.PENDING:
            raise HookNotFound(token)
        if self._is_overdue(hook):
            await self._expire_overdue(hook)
            raise HookNotFound(token)

        payload = self._validate(hook, payload)

        if not await self._repository.resolve_hook(token, payload, now=self._clock()):
            current = await self._repository.get_hook(token)
            if (
                current is not None
                and current.state == HookState.PENDING
                and self._is_overdue(current)
            ):
                await self._expire_overdue(current)
            raise HookNotFound(token)
        logger.info(f"Hook {token} resolved for run_id={hook.run_id}")
        if self._on_settled is not None:
            await self._on_settled(hook)
        return hook.run_id

    async def expire(self, token: str) -> str:
        """Expire a pending hook and return the waiting run's id.

        Raises:
            HookNotFound: Unknown token, or the hook already settled.
        """
        hook = await self._repository.get_hook(token)
        if hook is None or not await self._repository.expire_hook(token):
            raise HookNotFound(token)
        logger.info(f"Hook {token} expired for run_id={hook.run_id}")
        if self._on_settled is not None:
            await self._on_settled(hook)
        return hook.run_id

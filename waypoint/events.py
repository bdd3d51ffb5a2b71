"""Progress event sinks injected into workflow runs."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Protocol

from .contracts import ProgressEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receives progress events emitted by workflows."""

    async def emit(self, event: ProgressEvent) -> None:
        """Deliver one event."""


class LoggingEventSink:
    """Writes events to the ``waypoint.events`` logger as JSON lines."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def emit(self, event: ProgressEvent) -> None:
        logger.log(self.level, event.to_line().rstrip("\n"))


class InMemoryEventSink:
    """Collects events per run; readers can await new events."""

    def __init__(self) -> None:
        self._events: Dict[str, List[ProgressEvent]] = defaultdict(list)
        self._changed = asyncio.Condition()

    async def emit(self, event: ProgressEvent) -> None:
        async with self._changed:
            self._events[event.run_id].append(event)
            self._changed.notify_all()

    def events(self, run_id: str) -> List[ProgressEvent]:
        return list(self._events.get(run_id, []))

    async def wait_for(self, run_id: str, count: int, timeout: float = 5.0) -> List[ProgressEvent]:
        """Wait until at least ``count`` events exist for ``run_id``."""

        async def _predicate() -> List[ProgressEvent]:
            async with self._changed:
                await self._changed.wait_for(lambda: len(self._events[run_id]) >= count)
                return self.events(run_id)

        return await asyncio.wait_for(_predicate(), timeout)

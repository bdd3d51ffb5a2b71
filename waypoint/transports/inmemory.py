"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import RunMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.01

# (topic, serialized message)
InMemoryDelivery = Tuple[str, str]


class InMemoryTransport(BaseTransport[InMemoryDelivery]):
    """Per-topic deques shared by every publisher and subscriber in the process."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, RunMessage]]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: RunMessage) -> None:
        async with self._lock:
            self._queues[topic].append((message.to_json(), message))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[InMemoryDelivery, RunMessage]]:
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan

        while deadline is None or loop.time() < deadline:
            entry = None
            async with self._lock:
                if self._queues[topic]:
                    entry = self._queues[topic].popleft()
            if entry is None:
                await asyncio.sleep(POLL_INTERVAL)
                continue
            payload, _ = entry
            # hand out a fresh copy so consumers never share state with the queue
            yield (topic, payload), RunMessage.from_json(payload)

    def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        return len(self._queues[topic])

    async def ack(self, raw_message: InMemoryDelivery) -> None:
        pass

    async def nack(self, raw_message: InMemoryDelivery, requeue: bool = True) -> None:
        if not requeue:
            logger.warning(f"Discarding run message on {raw_message[0]}")
            return
        topic, payload = raw_message
        async with self._lock:
            self._queues[topic].appendleft((payload, RunMessage.from_json(payload)))

"""Run queue transport interface.

A transport carries :class:`~waypoint.contracts.RunMessage` envelopes from
whoever wants a run driven (start, hook resolution, timer, restart, recovery)
to the worker that executes replay passes. Delivery is at-least-once; the
scheduler tolerates duplicates because passes are idempotent.
"""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import RunMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of run messages.

    ``RawMessageT`` is whatever the backend needs to ack or requeue a
    delivery; the scheduler passes it back untouched.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, message: RunMessage) -> None:
        """Append ``message`` to the ``topic`` queue."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, RunMessage]]:
        """Yield ``(raw, message)`` deliveries from ``topic`` in FIFO order.

        Args:
            topic: Queue to consume.
            lifespan: Stop after this many seconds. ``None`` runs until cancelled.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as processed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give a delivery back; with ``requeue`` it is the next one delivered."""
        raise NotImplementedError

"""Redis transport for cross-process run queues."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import RunMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

BLOCK_TIMEOUT = 1

# (redis list name, serialized message)
RedisDelivery = Tuple[str, str]


class RedisTransport(BaseTransport[RedisDelivery]):
    """Run queues stored as Redis lists: ``LPUSH`` to publish, ``BRPOP`` to consume."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "waypoint",
        url: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.url = url
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        if self.url:
            self._redis = redis.from_url(self.url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()
        logger.debug(f"Connected to Redis run queue prefix={self.prefix}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: RunMessage) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RedisDelivery, RunMessage]]:
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = None if lifespan is None else loop.time() + lifespan

        while deadline is None or loop.time() < deadline:
            result = await self._redis.brpop(queue_name, timeout=BLOCK_TIMEOUT)
            if not result:
                continue

            _, payload = result
            try:
                message = RunMessage.from_json(payload)
            except ValidationError as e:
                logger.error(f"Dropping malformed run message on {queue_name}: {e}")
                continue
            yield (queue_name, payload), message

    async def ack(self, raw_message: RedisDelivery) -> None:
        # BRPOP already removed it
        pass

    async def nack(self, raw_message: RedisDelivery, requeue: bool = True) -> None:
        queue_name, payload = raw_message
        if not requeue:
            logger.warning(f"Discarding run message on {queue_name}")
            return
        if not self._redis:
            await self.connect()
        # RPUSH puts it at the consuming end, so it is delivered next
        await self._redis.rpush(queue_name, payload)

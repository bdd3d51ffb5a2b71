"""Run queue transports.

``get_transport`` picks a backend by name (``inmemory``, ``redis``) or by a
``redis://`` / ``rediss://`` URL, from the argument, ``WAYPOINT_TRANSPORT`` or
the loaded config, in that order.
"""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

_REDIS_SCHEMES = ("redis://", "rediss://", "unix://")


def get_transport(
    backend: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> BaseTransport:
    config = config or load_config()
    choice = backend or os.getenv("WAYPOINT_TRANSPORT") or config.transport.backend
    redis_conf = config.transport.redis

    if choice.lower() == "inmemory":
        return InMemoryTransport()

    if choice.lower() == "redis" or choice.startswith(_REDIS_SCHEMES):
        from .redis import RedisTransport

        url = choice if choice.startswith(_REDIS_SCHEMES) else redis_conf.url
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
            url=url,
        )

    raise ValueError(f"Unsupported transport backend: {choice}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]

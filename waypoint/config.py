from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_DEPLOYMENT_ID,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_CONCURRENT_RUNS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RUN_QUEUE,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None
    prefix: str = "waypoint"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    # "inmemory", "redis" or a redis:// URL
    backend: str = "inmemory"
    redis: RedisConfig = RedisConfig()


class SchedulerConfig(BaseModel):
    """Run scheduler settings."""

    queue: str = DEFAULT_RUN_QUEUE
    max_concurrent_runs: int = DEFAULT_MAX_CONCURRENT_RUNS
    deployment_id: str = DEFAULT_DEPLOYMENT_ID


class RetryConfig(BaseModel):
    """Default retry policy applied to steps."""

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_jitter: float = DEFAULT_BACKOFF_JITTER
    max_backoff: float = DEFAULT_MAX_BACKOFF


class WaypointConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> WaypointConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to WAYPOINT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("WAYPOINT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WaypointConfig(**data)
    else:
        config = WaypointConfig()

    env_db_url = os.getenv("WAYPOINT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("WAYPOINT_TRANSPORT")
    if env_transport:
        config.transport.backend = (
            env_transport if "://" in env_transport else env_transport.lower()
        )
    return config

"""Tests for configuration loading."""

import pytest

from waypoint.config import load_config
from waypoint.persistence import InMemoryRunRepository, SQLiteRunRepository, get_repository
from waypoint.transports import InMemoryTransport, get_transport
from waypoint.transports.redis import RedisTransport


def test_load_config_defaults():
    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.scheduler.queue == "runs"
    assert config.scheduler.max_concurrent_runs == 10
    assert config.retry.max_retries == 3
    assert config.database_url is None


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
scheduler:
  queue: renewals
  max_concurrent_runs: 2
retry:
  max_retries: 7
"""
    )
    monkeypatch.setenv("WAYPOINT_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.scheduler.queue == "renewals"
    assert config.scheduler.max_concurrent_runs == 2
    assert config.retry.max_retries == 7


def test_env_overrides_config_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///ignored.db\n")
    db_path = tmp_path / "runs.db"
    monkeypatch.setenv("WAYPOINT_CONFIG", str(config_path))
    monkeypatch.setenv("WAYPOINT_DATABASE_URL", f"sqlite://{db_path}")
    monkeypatch.setenv("WAYPOINT_TRANSPORT", "INMEMORY")

    config = load_config()
    assert config.database_url == f"sqlite://{db_path}"
    assert config.transport.backend == "inmemory"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("WAYPOINT_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
    assert isinstance(get_transport("inmemory"), InMemoryTransport)


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository(), InMemoryRunRepository)
    repo = get_repository(f"sqlite://{tmp_path / 'runs.db'}")
    assert isinstance(repo, SQLiteRunRepository)
    # later calls without arguments reuse the configured instance
    assert get_repository() is repo


def test_get_transport_accepts_redis_url(monkeypatch):
    monkeypatch.setenv("WAYPOINT_TRANSPORT", "redis://:Secret@cache.internal:6390/2")

    assert load_config().transport.backend == "redis://:Secret@cache.internal:6390/2"
    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.url == "redis://:Secret@cache.internal:6390/2"
    assert transport.prefix == "waypoint"


def test_get_transport_rejects_unknown_backend():
    with pytest.raises(ValueError, match="Unsupported transport backend"):
        get_transport("carrier-pigeon")

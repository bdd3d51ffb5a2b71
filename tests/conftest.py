import httpx
import pytest

import waypoint.persistence as persistence
from waypoint.config import RetryConfig, WaypointConfig
from waypoint.events import InMemoryEventSink
from waypoint.persistence import InMemoryRunRepository
from waypoint.scheduler import RunScheduler
from waypoint.transports.inmemory import InMemoryTransport
from waypoint.utils import retry as retry_utils
from waypoint.workflows import http

from tests.fixtures import workflows as test_workflows
from tests.fixtures.services import FakeServices


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep config files, env vars and shared singletons out of each test."""
    monkeypatch.setenv("WAYPOINT_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("WAYPOINT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("WAYPOINT_TRANSPORT", raising=False)
    persistence._repository_instance = None
    test_workflows.reset()
    yield
    persistence._repository_instance = None
    http.configure()


@pytest.fixture(autouse=True)
def retry_delays(monkeypatch):
    """Record retry delays instead of sleeping through them."""
    delays = []

    async def _record(delay):
        delays.append(delay)

    monkeypatch.setattr(retry_utils, "schedule_retry", _record)
    return delays


@pytest.fixture
def repository():
    return InMemoryRunRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def config():
    return WaypointConfig(retry=RetryConfig(max_retries=3, backoff_jitter=0.0))


@pytest.fixture
def scheduler(repository, transport, config, event_sink):
    return RunScheduler(
        repository=repository,
        transport=transport,
        config=config,
        event_sink=event_sink,
    )


@pytest.fixture
def services():
    fake = FakeServices()
    http.configure("http://services.test", httpx.MockTransport(fake.handler))
    return fake

"""
Shared fixtures for Certs Monitor tests.
"""

import pytest
import pytest_asyncio

from certs_monitor.config import Config
from certs_monitor.metrics import MetricsCollector
from certs_monitor.outbox import NotificationOutbox
from certs_monitor.renderer import TemplateRenderer
from certs_monitor.store import Store
from tests.helpers import FakeClock, FakeMailer, FakeProber


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    """Configuration backed by a throwaway SQLite file."""
    return Config(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        outbox_batch_size=10,
        outbox_max_attempts=3,
        website_url="https://certs.example",
    )


@pytest_asyncio.fixture
async def store(config):
    store = Store(config)
    await store.create_all()
    yield store
    await store.close()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def renderer():
    return TemplateRenderer()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def outbox(config, store, mailer, metrics, clock):
    return NotificationOutbox(config, store, mailer, metrics, clock=clock)

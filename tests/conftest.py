"""
Shared test fixtures.

Everything runs in-process: memory store, memory cache backend, recording
connections and an httpx.MockTransport standing in for webhook receivers.
"""

import httpx
import pytest

from orderflow.core.config import Settings
from orderflow.services.cache import CacheCoordinator, MemoryCacheBackend
from orderflow.services.notifications import NotificationFanout, RecordingConnection
from orderflow.services.orders import OrderService
from orderflow.services.storage import MemoryOrderStore
from orderflow.services.webhooks import WebhookDispatcher

from tests.factories import WebhookReceiver


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, env_mode="development")


@pytest.fixture
def store() -> MemoryOrderStore:
    store = MemoryOrderStore()
    store.add_delivery_person(3, "Carlos Rivera")
    store.add_delivery_person(4, "Ana Torres")
    store.add_delivery_person(9, "Retired Courier", is_active=False)
    return store


@pytest.fixture
def cache_backend() -> MemoryCacheBackend:
    return MemoryCacheBackend()


@pytest.fixture
def cache(cache_backend) -> CacheCoordinator:
    return CacheCoordinator(cache_backend, default_ttl=60)


@pytest.fixture
async def fanout():
    hub = NotificationFanout(queue_size=100)
    yield hub
    await hub.close()


@pytest.fixture
async def admin_client(fanout) -> RecordingConnection:
    """Connection in `all` and `admin`, like the admin dashboard."""
    connection = RecordingConnection("admin-dashboard")
    await fanout.connect(connection)
    fanout.subscribe(connection.connection_id, "admin")
    return connection


@pytest.fixture
def receiver() -> WebhookReceiver:
    return WebhookReceiver()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
async def dispatcher(store, settings, receiver, sleeps):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    yield WebhookDispatcher(store, client=client, settings=settings, sleep=fake_sleep)
    await client.aclose()


@pytest.fixture
async def service(store, cache, fanout, dispatcher, settings):
    service = OrderService(store, cache, fanout, dispatcher, settings=settings)
    yield service
    await service.drain()

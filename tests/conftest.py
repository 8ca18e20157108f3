"""Test fixtures — an in-process notification core with fake edges.

Learn: Nothing here needs a running Redis or a real subscriber:

1. FakeClock drives the rate-limit buckets, the queue's backoff and
   the scheduler, so time-dependent tests advance time explicitly.
2. FakeCounterStore implements the three commands the rate limiter
   uses (INCR / EXPIRE / TTL) against that clock. Flip `unreachable`
   to simulate an outage.
3. WebhookEndpoint is an httpx.MockTransport handler that records every
   delivery and replays a scripted list of status codes.
4. The core is built with queue_autostart off; tests run jobs one at a
   time with queue.process_next(tier).

The app gets the core through create_app(core=...) since ASGITransport
does not run the lifespan.
"""

import math

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from unittest.mock import AsyncMock

from herald.config import Settings
from herald.core import build_core
from herald.main import create_app
from herald.schemas.subscriber import ExternalApp, SubscriberConfig
from herald.services.collaborators import (
    InMemoryApiKeyLookup,
    InMemoryNotificationStore,
    InMemorySubscriberDirectory,
)

START_TIME = 1_700_000_000.0

API_KEY = "test-api-key"
SCOPED_API_KEY = "scoped-api-key"
INACTIVE_API_KEY = "inactive-api-key"
WEBHOOK_SECRET = "whsec_test"
CALLBACK_URL = "https://subscriber.test/hooks/herald"


class FakeClock:
    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCounterStore:
    """Just enough of redis.asyncio for the rate limiter."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.counts: dict[str, int] = {}
        self.expires: dict[str, float] = {}
        self.unreachable = False

    def _check(self):
        if self.unreachable:
            raise ConnectionError("Error connecting to redis://localhost:6379")

    def _evict(self, key: str) -> None:
        expires_at = self.expires.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self.counts.pop(key, None)
            self.expires.pop(key, None)

    async def incr(self, key: str) -> int:
        self._check()
        self._evict(key)
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.expires[key] = self.clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        self._check()
        self._evict(key)
        if key not in self.counts:
            return -2
        if key not in self.expires:
            return -1
        return math.ceil(self.expires[key] - self.clock())


class WebhookEndpoint:
    """Scripted subscriber endpoint: replays `statuses`, then answers 200."""

    def __init__(self):
        self.statuses: list = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status, json={"ok": status < 400})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def counter_store(clock):
    return FakeCounterStore(clock)


@pytest.fixture
def webhook_endpoint():
    return WebhookEndpoint()


@pytest.fixture
def test_settings():
    return Settings(
        queue_autostart=False,
        rate_limit_per_app=100,
        rate_limit_per_tenant=20,
        rate_limit_bulk=10,
        webhook_audit_cap=100,
    )


@pytest.fixture
def store():
    return InMemoryNotificationStore()


@pytest.fixture
def subscribers():
    directory = InMemorySubscriberDirectory(audit_cap=100)
    directory.register(
        SubscriberConfig(app_id="app-1", callback_url=CALLBACK_URL, secret=WEBHOOK_SECRET)
    )
    return directory


@pytest.fixture
def api_keys():
    lookup = InMemoryApiKeyLookup()
    lookup.register(API_KEY, ExternalApp(app_id="app-1", app_name="Billing"))
    lookup.register(
        SCOPED_API_KEY,
        ExternalApp(app_id="app-2", app_name="Scoped", allowed_tenants=["tenant-a"]),
    )
    lookup.register(
        INACTIVE_API_KEY, ExternalApp(app_id="app-3", app_name="Retired", is_active=False)
    )
    return lookup


@pytest_asyncio.fixture()
async def core(test_settings, clock, counter_store, webhook_endpoint, store, subscribers, api_keys):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(webhook_endpoint))
    core = build_core(
        test_settings,
        store=store,
        subscribers=subscribers,
        api_keys=api_keys,
        http_client=http_client,
        counter_store=counter_store,
        clock=clock,
        webhook_sleep=AsyncMock(),
    )
    yield core
    await core.stop()
    await http_client.aclose()


@pytest_asyncio.fixture()
async def client(core):
    """HTTP client authenticated as app-1 (unrestricted tenants)."""
    app = create_app(core=core)
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-API-Key": API_KEY}
    ) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anonymous_client(core):
    """HTTP client without an API key."""
    app = create_app(core=core)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def client_for(core, api_key: str) -> AsyncClient:
    """HTTP client authenticated with a specific API key."""
    transport = ASGITransport(app=create_app(core=core))
    return AsyncClient(transport=transport, base_url="http://test", headers={"X-API-Key": api_key})

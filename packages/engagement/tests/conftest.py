"""
Shared fixtures for engagement core tests.

The real client and stores run against the in-process mock record store
through httpx.ASGITransport.
"""

import asyncio

import httpx
import pytest

from engagement_core.config import EngagementConfig
from engagement_core.core import EngagementCore
from engagement_core.invalidation import ViewRegistry
from engagement_core.records import RecordStoreClient
from engagement_core.schemas import Capability

from .mock_store import API_KEY, MockStore, create_store_app

STORE_URL = "http://store.test"


def capability_for(user_id: str, subscribed: bool = False, admin: bool = False) -> Capability:
    return Capability(
        user_id=user_id,
        authenticated=True,
        subscribed=subscribed or admin,
        admin=admin,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` holds; fails the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def store():
    s = MockStore()
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def transport(store):
    return httpx.ASGITransport(app=create_store_app(store))


@pytest.fixture
def config(monkeypatch) -> EngagementConfig:
    monkeypatch.setenv("TEST_STORE_KEY", API_KEY)
    return EngagementConfig.model_validate({
        "store": {
            "url": STORE_URL,
            "api_key_env": "TEST_STORE_KEY",
            "read_retries": 1,
            "retry_base_seconds": 0,
        },
        "logging": {"level": "debug", "format": "text"},
    })


@pytest.fixture
def notices() -> list:
    return []


@pytest.fixture
async def client(transport):
    c = RecordStoreClient(
        STORE_URL,
        api_key=API_KEY,
        read_retries=1,
        retry_base_seconds=0,
        transport=transport,
    )
    await c.open()
    yield c
    await c.close()


@pytest.fixture
def views() -> ViewRegistry:
    return ViewRegistry()


@pytest.fixture
async def core(config, transport, notices):
    async with EngagementCore(config, transport=transport, notices=notices.append) as c:
        yield c


@pytest.fixture
async def alice(store, core) -> EngagementCore:
    """Core signed in as the unsubscribed user ``alice``."""
    token = store.add_user("alice")
    await core.sign_in("alice", token)
    return core

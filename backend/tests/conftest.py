import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("POSTGRES_ENABLED", "false")

from clstr.domain import connections, identity, messaging
from clstr.domain.messaging import realtime
from clstr.domain.messaging.service import get_service as get_messaging_service
from clstr.infra import postgres
from clstr.main import app
from clstr.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
    from clstr.infra.redis import redis_client, set_redis_client
    original = redis_client.client
    client = FakeRedis(decode_responses=True)
    set_redis_client(client)
    try:
        yield client
    finally:
        set_redis_client(original)
        await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
    async def _noop():
        return None

    monkeypatch.setattr(postgres, "init_pool", _noop)
    monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
    """Ensure a consistent test environment.

    API tests authenticate via X-User-Id/X-User-Roles headers, which are only
    accepted in dev mode. Postgres is switched off so repositories use their
    in-memory stores.
    """
    original_env = settings.environment
    original_attempts = settings.read_retry_attempts
    original_backoff = settings.read_retry_backoff_seconds
    original_postgres = settings.postgres_enabled
    settings.environment = "dev"
    settings.postgres_enabled = False
    settings.read_retry_backoff_seconds = 0.0
    try:
        yield
    finally:
        settings.environment = original_env
        settings.read_retry_attempts = original_attempts
        settings.read_retry_backoff_seconds = original_backoff
        settings.postgres_enabled = original_postgres


@pytest_asyncio.fixture
async def feed():
    """Route realtime events through an in-process feed."""
    memory_feed = realtime.InMemoryFeed()
    realtime.set_feed(memory_feed)
    try:
        yield memory_feed
    finally:
        await get_messaging_service().reset_realtime()
        realtime.set_feed(None)


@pytest_asyncio.fixture(autouse=True)
async def reset_stores(feed):
    identity.reset_memory_state()
    connections.reset_memory_state()
    messaging.reset_memory_state()
    yield
    identity.reset_memory_state()
    connections.reset_memory_state()
    messaging.reset_memory_state()


@pytest_asyncio.fixture
async def api_client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def make_user():
    """Register a profile in the in-memory directory and return its AuthenticatedUser."""
    from uuid import uuid4

    from clstr.infra.auth import AuthenticatedUser

    async def _make(domain="mcgill.ca", role="Student", full_name=None):
        user_id = str(uuid4())
        await identity.register_profile(user_id, domain=domain, role=role, full_name=full_name or f"user-{user_id[:6]}")
        return AuthenticatedUser(id=user_id, display_name=full_name)

    return _make


@pytest.fixture
def connect():
    """Drive two users to an accepted connection."""
    from clstr.domain.connections import service as connection_service

    async def _connect(user_a, user_b):
        pending = await connection_service.request_connection(user_a, user_b.id)
        return await connection_service.respond_to_connection(user_b, pending.id, "accept")

    return _connect

"""Shared fixtures: isolated database, frozen clock and service container per test"""
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient

from keyhub.core.cache.rate_limiter import RateLimiter
from keyhub.core.config import Settings
from keyhub.core.credentials import generate_api_key, generate_uid
from keyhub.db.session import Database
from keyhub.main import app
from keyhub.models.domain import KeyType
from keyhub.services.container import build_services
from keyhub.utils.clock import FrozenClock, to_timestamp

START = datetime(2024, 1, 1, 0, 0, 0)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def config():
    return Settings(JWT_SECRET_KEY="test-secret-key", LOCK_TIMEOUT_SECONDS=2.0)


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'keyhub-test.db'}", echo=False)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def services(database, clock, config):
    limiter = RateLimiter(timer=lambda: float(to_timestamp(clock())))
    return build_services(database, clock=clock, config=config, rate_limiter=limiter)


@pytest.fixture
def make_key(services):
    """Factory storing a key directly through the gateway"""

    async def _make_key(name="Admin", key_type=KeyType.ADMIN, is_active=True, key_value=None):
        return await services.gateway.put_api_key(generate_uid(), {
            "key_value": key_value or generate_api_key(),
            "name": name,
            "type": key_type,
            "is_active": is_active,
        })

    return _make_key


@pytest.fixture
async def admin_key(make_key):
    return await make_key("Admin Principal", KeyType.ADMIN)


@pytest.fixture
async def client(services):
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


@pytest.fixture
def bearer():
    def _bearer(token):
        return {"Authorization": f"Bearer {token}"}
    return _bearer

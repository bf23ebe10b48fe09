"""
Shared fixtures: in-memory SQLite database, in-memory Redis double and a
stubbed Horizon API. Environment must be set before ridepay is imported.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["GOOGLE_MAPS_API_KEY"] = ""
os.environ["STELLAR_NETWORK"] = "testnet"
os.environ["STELLAR_HORIZON_URL"] = "https://horizon.test"

import time
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from stellar_sdk import Network

import ridepay.models  # noqa: F401
from ridepay import redis_client
from ridepay.database import Base, get_db
from ridepay.main import app
from ridepay.routers import trips as trips_router
from ridepay.services.maps import GoogleMapsClient, get_maps_client, haversine_km
from ridepay.services.stellar import HorizonClient, get_horizon_client

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class InMemoryRedis:
    """The subset of redis.asyncio.Redis the app uses, backed by dicts."""

    def __init__(self):
        self.store: dict[str, tuple[str, float | None]] = {}
        self.geo: dict[str, dict[str, tuple[float, float]]] = {}

    def _alive(self, key):
        item = self.store.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and expires < time.monotonic():
            del self.store[key]
            return None
        return value

    async def get(self, key):
        return self._alive(key)

    async def getdel(self, key):
        value = self._alive(key)
        self.store.pop(key, None)
        return value

    async def set(self, key, value, nx=False, px=None, ex=None):
        if nx and self._alive(key) is not None:
            return None
        ttl = px / 1000 if px else ex
        self.store[key] = (str(value), time.monotonic() + ttl if ttl else None)
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = (str(value), time.monotonic() + ttl)
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += self.store.pop(key, None) is not None
        return removed

    async def geoadd(self, key, values):
        lng, lat, member = values
        self.geo.setdefault(key, {})[member] = (lat, lng)
        return 1

    async def zrem(self, key, *members):
        bucket = self.geo.get(key, {})
        return sum(bucket.pop(m, None) is not None for m in members)

    async def geosearch(self, key, longitude, latitude, radius, unit="km", sort="ASC", count=None):
        bucket = self.geo.get(key, {})
        hits = sorted(
            (haversine_km(latitude, longitude, lat, lng), member)
            for member, (lat, lng) in bucket.items()
        )
        found = [member for dist, member in hits if dist <= radius]
        return found[:count] if count else found

    async def aclose(self):
        pass


class HorizonStub:
    """Canned Horizon responses served through httpx.MockTransport."""

    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.operations: dict[str, list[dict]] = {}
        self.submit_response: tuple[int, dict] = (
            400,
            {"detail": "bad tx", "extras": {"result_codes": {"transaction": "tx_bad_seq"}}},
        )
        self.submitted: list[str] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        if request.method == "POST" and parts == ["transactions"]:
            form = parse_qs(request.content.decode())
            self.submitted.append(form["tx"][0])
            status_code, body = self.submit_response
            return httpx.Response(status_code, json=body)
        if parts[0] == "accounts" and len(parts) == 2:
            account = self.accounts.get(parts[1])
            return httpx.Response(200, json=account) if account else httpx.Response(404, json={})
        if parts[0] == "transactions" and len(parts) >= 2:
            tx = self.transactions.get(parts[1])
            if tx is None:
                return httpx.Response(404, json={"title": "Resource Missing"})
            if len(parts) == 3 and parts[2] == "operations":
                return httpx.Response(200, json={"_embedded": {"records": self.operations.get(parts[1], [])}})
            return httpx.Response(200, json=tx)
        return httpx.Response(404, json={})

    def client(self) -> HorizonClient:
        return HorizonClient(
            base_url="https://horizon.test",
            passphrase=Network.TESTNET_NETWORK_PASSPHRASE,
            transport=httpx.MockTransport(self.handle),
        )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def fake_redis(monkeypatch):
    fake = InMemoryRedis()
    monkeypatch.setattr(redis_client, "_redis_pool", fake)
    return fake


@pytest.fixture
def horizon():
    return HorizonStub()


@pytest.fixture
def matching_mock(monkeypatch):
    mock = AsyncMock(return_value=False)
    monkeypatch.setattr(trips_router, "run_matching", mock)
    return mock


@pytest_asyncio.fixture
async def client(session_factory, fake_redis, horizon, matching_mock):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_maps_client] = lambda: GoogleMapsClient(api_key="")
    app.dependency_overrides[get_horizon_client] = horizon.client
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

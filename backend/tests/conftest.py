# backend/tests/conftest.py
import asyncio
import os
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

# Settings are read at import time; point them at throwaway values first.
_BOOT_DIR = Path(tempfile.mkdtemp(prefix="lookup-meter-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_BOOT_DIR / 'boot.db'}"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-payment-secret"
os.environ["LOOKUP_RETRY_BACKOFF_SECONDS"] = "0"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from lookup_meter.core.database import Base, get_db_session
from lookup_meter.main import app as fastapi_app
from lookup_meter.schemas.search import LookupStatus, SearchMode
from lookup_meter.services.lookup_client import LookupResult
from lookup_meter.services.metering import MeteringCoordinator, SearchCosts
from lookup_meter.services.rate_limiter import SlidingWindowRateLimiter

import lookup_meter.models.account_balance  # noqa: F401
import lookup_meter.models.ledger_transaction  # noqa: F401
import lookup_meter.models.search_cache  # noqa: F401


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLookupClient:
    """Records calls; returns canned results keyed by lowercased term."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, SearchMode]] = []
        self.results: dict[str, LookupResult] = {}
        self.delay: float = 0.0

    def set_users(self, term: str, users: list[dict]) -> None:
        if users:
            self.results[term.strip().lower()] = LookupResult(
                status=LookupStatus.SUCCESS, payload=users, result_count=len(users)
            )
        else:
            self.results[term.strip().lower()] = LookupResult(status=LookupStatus.NO_MATCH, payload=[])

    def fail(self, term: str) -> None:
        self.results[term.strip().lower()] = LookupResult(status=LookupStatus.ERROR, detail="HTTP 503")

    async def lookup(self, term: str, mode: SearchMode) -> LookupResult:
        self.calls.append((term, mode))
        if self.delay:
            await asyncio.sleep(self.delay)
        default = LookupResult(
            status=LookupStatus.SUCCESS,
            payload=[{"id": 1, "name": term.strip()}],
            result_count=1,
        )
        return self.results.get(term.strip().lower(), default)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path: Path):
    """A fresh file-backed SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'meter.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_lookup() -> FakeLookupClient:
    return FakeLookupClient()


@pytest.fixture
def rate_limiter(clock: FakeClock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock)


@pytest.fixture
def coordinator(fake_lookup, rate_limiter) -> MeteringCoordinator:
    return MeteringCoordinator(
        lookup_client=fake_lookup,
        rate_limiter=rate_limiter,
        costs=SearchCosts(exact=1, fuzzy=2),
        lookup_timeout_s=0.5,
    )


@pytest_asyncio.fixture(scope="function")
async def test_client(
    session_factory,
    coordinator: MeteringCoordinator,
) -> AsyncGenerator[AsyncClient, None]:
    """httpx client against the app, with the test database and fakes injected."""

    async def override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    fastapi_app.dependency_overrides[get_db_session] = override_get_db_session
    fastapi_app.state.rate_limiter = coordinator.rate_limiter
    fastapi_app.state.coordinator = coordinator

    async with AsyncClient(
        transport=ASGITransport(app=fastapi_app), base_url="http://test"
    ) as client:
        yield client

    fastapi_app.dependency_overrides.clear()
    del fastapi_app.state.rate_limiter
    del fastapi_app.state.coordinator

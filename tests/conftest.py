"""Shared test fixtures for pytest."""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from ralloc.capacity_index import CapacityIndex
from ralloc.catalog import CachedCatalog, Resource, StaticCatalog
from ralloc.db import create_db_engine, create_session_factory, init_db
from ralloc.engine import AllocationEngine
from ralloc.events import InMemoryEventPublisher
from ralloc.ledger import AllocationLedger

# 2024-01-01 is a Monday
MON = datetime(2024, 1, 1, tzinfo=UTC)
TUE = MON + timedelta(days=1)
WED = MON + timedelta(days=2)
THU = MON + timedelta(days=3)
FRI = MON + timedelta(days=4)
SAT = MON + timedelta(days=5)


def at(hour: int, minute: int = 0, day: datetime = MON) -> datetime:
    """An instant on ``day`` at ``hour:minute`` UTC."""
    return day + timedelta(hours=hour, minutes=minute)


class FakeClock:
    """Controllable clock for catalog staleness."""

    def __init__(self, now: datetime = MON) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def default_resources() -> list[Resource]:
    return [
        Resource(id="X", category="engineer", base_capacity=100),
        Resource(id="Y", category="engineer", base_capacity=50),
        Resource(id="Z", category="designer", base_capacity=100),
        Resource(id="OLD", category="engineer", base_capacity=100, active=False),
    ]


@pytest.fixture
def source():
    """Static catalog source the engine reads through its cache."""
    return StaticCatalog(default_resources())


@pytest.fixture
def catalog_clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest_asyncio.fixture
async def ledger(tmp_path):
    """Fresh file-backed ledger per test."""
    db_engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_db(db_engine)
    yield AllocationLedger(create_session_factory(db_engine))
    await db_engine.dispose()


@pytest_asyncio.fixture
async def engine(ledger, source, catalog_clock, publisher):
    """Allocation engine wired to in-memory collaborators."""
    catalog = CachedCatalog(source, staleness=timedelta(minutes=5), clock=catalog_clock)
    yield AllocationEngine(
        ledger=ledger,
        catalog=catalog,
        index=CapacityIndex(timedelta(days=1)),
        publisher=publisher,
    )


@pytest.fixture
def client(tmp_path):
    """Test client for the HTTP server with an isolated ledger file."""
    from fastapi.testclient import TestClient

    from ralloc.config import Settings
    from ralloc.server import create_app

    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        log_level="WARNING",
        event_max_attempts=1,
        event_retry_base_seconds=0.0,
    )
    app = create_app(settings, catalog_source=StaticCatalog(default_resources()))
    with TestClient(app) as test_client:
        yield test_client

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from apps.api.services.presence import NotificationFeed, TypingTracker
from apps.api.services.tickets import TicketRepository, TicketService

from .factories import FakeMonotonic, TickingClock


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def typing_clock() -> FakeMonotonic:
    return FakeMonotonic()


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def repository(engine: AsyncEngine, clock: TickingClock) -> TicketRepository:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    repo = TicketRepository(factory, engine=engine, clock=clock)
    await repo.ensure_schema()
    return repo


@pytest.fixture
def service(repository: TicketRepository, clock: TickingClock, typing_clock: FakeMonotonic) -> TicketService:
    return TicketService(
        repository,
        typing=TypingTracker(stale_after=10.0, clock=typing_clock),
        notifications=NotificationFeed(limit=50, preview_length=50, clock=clock),
        clock=clock,
    )

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from helpdesk.tickets.authorization import Actor, Role
from helpdesk.tickets.directory import SqlUserDirectory
from helpdesk.tickets.repository import TicketRepository
from helpdesk.tickets.service import TicketService
from packages.db.models import UserTable

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = START) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


ACTORS = {
    "requester": Actor(id="user-requester", name="Riley Requester", role=Role.USER, email="riley@example.com"),
    "other_user": Actor(id="user-other", name="Olive Other", role=Role.USER, email="olive@example.com"),
    "agent": Actor(id="agent-ada", name="Ada Agent", role=Role.AGENT, email="ada@example.com"),
    "other_agent": Actor(id="agent-ben", name="Ben Agent", role=Role.AGENT, email="ben@example.com"),
    "admin": Actor(id="admin-cy", name="Cy Admin", role=Role.ADMIN, email="cy@example.com"),
    "inactive_agent": Actor(
        id="agent-gone", name="Gone Agent", role=Role.AGENT, email="gone@example.com", is_active=False
    ),
}


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def actors(session_factory: async_sessionmaker) -> dict[str, Actor]:
    async with session_factory() as session:
        async with session.begin():
            for actor in ACTORS.values():
                session.add(
                    UserTable(
                        id=actor.id,
                        name=actor.name,
                        email=actor.email,
                        role=actor.role.value,
                        is_active=actor.is_active,
                        created_at=START,
                    )
                )
    return dict(ACTORS)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest.fixture
def directory(session_factory: async_sessionmaker) -> SqlUserDirectory:
    return SqlUserDirectory(session_factory)


@pytest.fixture
def service(
    repository: TicketRepository,
    directory: SqlUserDirectory,
    clock: FrozenClock,
    actors: dict[str, Actor],
) -> TicketService:
    return TicketService(repository, directory, clock=clock)

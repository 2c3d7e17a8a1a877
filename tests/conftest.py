"""Shared test configuration and fixtures.

Store-backed tests run against a real PostgreSQL database because the
engine's guarantees (row locks, partial unique indexes, conditional
updates) live in the store:

- The URL comes from ``TEST_DATABASE_URL``, defaulting to the configured
  database with a ``_test`` suffix. The database must exist.
- Tables are created once per session and truncated after every test, so
  tests may commit freely and open several sessions (settlement and the
  concurrency tests need to).
- When no server is reachable, every store-backed test is skipped; the
  pure-logic tests still run.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from matchpoint.auth.jwt import bearer_headers
from matchpoint.config import settings
from matchpoint.database import Base, get_session_factory
from matchpoint.models import Court, User
from matchpoint.models.enums import UserRole

TZ = ZoneInfo(settings.timezone)

_test_db_url = os.getenv("TEST_DATABASE_URL") or settings.async_database_url + "_test"


def tomorrow_at(hour: int, minute: int = 0) -> datetime:
    """A timezone-aware instant tomorrow in club-local time."""
    day = datetime.now(TZ).date() + timedelta(days=1)
    return datetime.combine(day, time(hour, minute), tzinfo=TZ)


def years_ago(years: int) -> date:
    today = datetime.now(TZ).date()
    return today.replace(year=today.year - years, day=min(today.day, 28))


# ---------------------------------------------------------------------------
# Session-scoped: engine and schema
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def test_engine():
    """Create a session-scoped engine tied to the session event loop."""
    engine = create_async_engine(_test_db_url, echo=False, pool_size=10, max_overflow=10)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL test database not reachable: {e}")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def setup_test_db(test_engine):
    """Create all tables at the start of the session and drop them at the end."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Per-test: sessions, truncation and the API client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(test_engine, setup_test_db) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to the test database; wipes all rows afterwards."""
    yield async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    tables = ", ".join(table.name for table in reversed(Base.metadata.sorted_tables))
    async with test_engine.begin() as conn:
        await conn.execute(text(f"TRUNCATE {tables} CASCADE"))


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A plain session; tests commit when other sessions must see their rows."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test database."""
    from matchpoint.database import get_db
    from matchpoint.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: people and courts
# ---------------------------------------------------------------------------


async def make_user(
    db: AsyncSession,
    role: UserRole = UserRole.PLAYER,
    age: int | None = 30,
    is_active: bool = True,
) -> User:
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"{role.value}-{unique}@test.com",
        name=f"Test {role.value.title()}",
        birth_date=years_ago(age) if age is not None else None,
        role=role.value,
        is_active=is_active,
    )
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def player(db_session: AsyncSession) -> User:
    user = await make_user(db_session)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def teen_player(db_session: AsyncSession) -> User:
    user = await make_user(db_session, age=16)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def staff(db_session: AsyncSession) -> User:
    user = await make_user(db_session, role=UserRole.STAFF)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def court(db_session: AsyncSession) -> Court:
    """A padel court open 08:00-23:00 at €20/h."""
    court = Court(
        name="Pista 1",
        sport="padel",
        opens_at=time(8, 0),
        closes_at=time(23, 0),
        hourly_rate_cents=2000,
        is_active=True,
    )
    db_session.add(court)
    await db_session.commit()
    return court


@pytest.fixture
def player_headers(player: User) -> dict[str, str]:
    return bearer_headers(str(player.id))


@pytest.fixture
def staff_headers(staff: User) -> dict[str, str]:
    return bearer_headers(str(staff.id))

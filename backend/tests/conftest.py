"""
Test Configuration — Fixtures for async DB, test client, and seeded plant data.

Each test gets its own in-memory SQLite database (StaticPool keeps the single
connection alive for the test). Multi-session concurrency tests use the
file-backed ``session_factory`` fixture instead.
"""

import uuid
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db
from api.main import app
from db.session import Base
from shifts.clock import ShiftClock

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

OPERATOR_ID = uuid.UUID("00000000-0000-0000-0000-000000000101")
SUPERVISOR_ID = uuid.UUID("00000000-0000-0000-0000-000000000102")
MACHINE_ID = uuid.UUID("00000000-0000-0000-0000-000000000201")
SECOND_MACHINE_ID = uuid.UUID("00000000-0000-0000-0000-000000000202")


@pytest.fixture
async def test_engine():
    """Create a fresh in-memory database with all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session = AsyncSession(bind=test_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed database for tests that need several independent sessions."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shifts.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return ShiftClock(day_start_hour=7, night_start_hour=19)


async def seed_plant(db: AsyncSession) -> dict:
    """Two machines, one operator and one supervisor."""
    from db.models import Machine, Operator

    operator = Operator(operator_id=OPERATOR_ID, name="Ana Operator", email="ana@plant.test", role="OPERATOR")
    supervisor = Operator(operator_id=SUPERVISOR_ID, name="Sam Supervisor", email="sam@plant.test", role="ADMIN")
    machine = Machine(
        machine_id=MACHINE_ID,
        name="Extruder 1",
        code="EXT-01",
        status="STOPPED",
        production_speed=2.0,
        target_production=1200,
    )
    second = Machine(
        machine_id=SECOND_MACHINE_ID,
        name="Extruder 2",
        code="EXT-02",
        status="STOPPED",
        production_speed=1.0,
        target_production=600,
    )
    db.add_all([operator, supervisor, machine, second])
    await db.commit()
    return {"operator": operator, "supervisor": supervisor, "machine": machine, "second_machine": second}


@pytest.fixture
async def seeded_db(test_db):
    return await seed_plant(test_db)


async def add_status_change(db: AsyncSession, machine_id, previous, new, at: datetime):
    from db.models import MachineStatusHistory

    db.add(
        MachineStatusHistory(
            machine_id=machine_id,
            previous_status=previous,
            new_status=new,
            created_at=at,
        )
    )
    await db.commit()


@pytest.fixture
def mock_user():
    """Authenticated supervisor (admin) operator."""
    return {
        "sub": str(SUPERVISOR_ID),
        "operator_id": str(SUPERVISOR_ID),
        "email": "sam@plant.test",
        "role": "ADMIN",
    }


@pytest.fixture
def operator_user():
    return {
        "sub": str(OPERATOR_ID),
        "operator_id": str(OPERATOR_ID),
        "email": "ana@plant.test",
        "role": "OPERATOR",
    }


@pytest.fixture
async def client(test_db, mock_user):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()

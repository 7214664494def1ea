"""
Shared fixtures: a throwaway file-backed SQLite database per test and a
small seeded competition (teams, inspection catalog).
"""
from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from paddock.database import build_engine, build_session_factory, init_db
from paddock.orm.inspection import InspectionType
from paddock.orm.team import Team
from paddock.services.booking_service import BookingService
from paddock.services.penalty_service import PenaltyService
from paddock.services.results_service import ResultsService


INSPECTION_DAY = date(2026, 7, 21)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'paddock_test.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def teams(db: AsyncSession):
    """Three registered teams."""
    rows = [
        Team(name="Aristotle Racing", vehicle_number="7"),
        Team(name="Centaurus Racing", vehicle_number="12"),
        Team(name="Prometheus Racing", vehicle_number="31"),
    ]
    db.add_all(rows)
    await db.commit()
    return rows


@pytest_asyncio.fixture
async def catalog(db: AsyncSession):
    """
    Inspection catalog keyed by inspection key.

    accumulator → electrical → tilt ← mechanical; mechanical has two lanes.
    """
    rows = {
        "accumulator": InspectionType(
            key="accumulator", name="Accumulator", duration_minutes=60,
            concurrent_slots=1, prerequisites=[], sort_order=1
        ),
        "electrical": InspectionType(
            key="electrical", name="Electrical", duration_minutes=60,
            concurrent_slots=1, prerequisites=["accumulator"], sort_order=2
        ),
        "mechanical": InspectionType(
            key="mechanical", name="Mechanical", duration_minutes=120,
            concurrent_slots=2, prerequisites=[], sort_order=3
        ),
        "tilt": InspectionType(
            key="tilt", name="Tilt Test", duration_minutes=30,
            concurrent_slots=1, prerequisites=["mechanical", "electrical"], sort_order=4
        ),
    }
    db.add_all(rows.values())
    await db.commit()
    return rows


@pytest.fixture
def booking_service():
    return BookingService()


@pytest.fixture
def penalty_service():
    return PenaltyService()


@pytest.fixture
def results_service():
    return ResultsService()

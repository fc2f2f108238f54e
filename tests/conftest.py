import asyncio
import os
from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("NO_SHOW_SWEEP_ENABLED", "false")

from clinic_scheduler.core.db import build_session_maker, init_db  # noqa: E402
from clinic_scheduler.services.directory import InMemoryDirectory  # noqa: E402
from clinic_scheduler.services.events import AppointmentEventBus  # noqa: E402
from clinic_scheduler.services.scheduling_service import build_scheduling_service  # noqa: E402

MONDAY = date(2030, 1, 7)
DOCTOR_ID = 1
OTHER_DOCTOR_ID = 2
PATIENT_ID = 10
OTHER_PATIENT_ID = 11


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


class FixedClock:
    """Deterministic "now" for the scheduling core."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    yield build_session_maker(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def clock() -> FixedClock:
    # The Sunday before MONDAY, so every booking on MONDAY is in the future
    return FixedClock(datetime(2030, 1, 6, 12, 0))


@pytest.fixture
def events() -> AppointmentEventBus:
    return AppointmentEventBus(maxsize=100)


@pytest.fixture
def scheduler(session_maker, clock, events):
    directory = InMemoryDirectory(
        doctor_ids={DOCTOR_ID, OTHER_DOCTOR_ID},
        patient_ids={PATIENT_ID, OTHER_PATIENT_ID, 12},
    )
    return build_scheduling_service(session_maker, directory=directory, events=events, clock=clock)


@pytest.fixture
def monday_clinic(scheduler):
    """Doctor 1 sees patients on Mondays 09:00-12:00."""
    return asyncio.run(scheduler.add_availability(DOCTOR_ID, 0, time(9, 0), time(12, 0), location="Room 4"))

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_scheduler.core.config import settings
from clinic_scheduler.core.exceptions import (
    InvalidRangeError,
    NotFoundError,
    OverlappingWindowError,
    ValidationError,
)
from clinic_scheduler.core.locking import DoctorLocks
from clinic_scheduler.models.availability import DoctorAvailabilityWindow

logger = logging.getLogger(__name__)

AVAILABILITY_LOCK = "availability"


def windows_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


class ScheduleCatalog:
    """Doctors' recurring weekly availability windows."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], locks: DoctorLocks) -> None:
        self._session_maker = session_maker
        self._locks = locks

    @asynccontextmanager
    async def _reader(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._session_maker() as own:
            yield own

    async def windows_for(
        self, doctor_id: int, weekday: int, *, session: AsyncSession | None = None
    ) -> list[DoctorAvailabilityWindow]:
        """Windows for one weekday, ascending by start. Empty when the doctor is off that day."""
        async with self._reader(session) as s:
            result = await s.execute(
                select(DoctorAvailabilityWindow)
                .where(
                    DoctorAvailabilityWindow.doctor_id == doctor_id,
                    DoctorAvailabilityWindow.weekday == weekday,
                )
                .order_by(DoctorAvailabilityWindow.start_time)
            )
            return list(result.scalars().all())

    async def list_windows(self, doctor_id: int) -> list[DoctorAvailabilityWindow]:
        async with self._reader(None) as s:
            result = await s.execute(
                select(DoctorAvailabilityWindow)
                .where(DoctorAvailabilityWindow.doctor_id == doctor_id)
                .order_by(DoctorAvailabilityWindow.weekday, DoctorAvailabilityWindow.start_time)
            )
            return list(result.scalars().all())

    async def get_window(self, window_id: int, *, doctor_id: int | None = None) -> DoctorAvailabilityWindow:
        async with self._reader(None) as s:
            window = await s.get(DoctorAvailabilityWindow, window_id)
        if window is None or (doctor_id is not None and window.doctor_id != doctor_id):
            raise NotFoundError(f"Availability window {window_id} not found")
        return window

    async def window_containing(
        self, doctor_id: int, start: datetime, end: datetime, *, session: AsyncSession | None = None
    ) -> DoctorAvailabilityWindow | None:
        # Windows are time-of-day ranges, so an interval crossing midnight never fits
        if start.date() != end.date():
            return None
        for window in await self.windows_for(doctor_id, start.weekday(), session=session):
            if window.contains(start.time(), end.time()):
                return window
        return None

    async def window_at(
        self, doctor_id: int, start: datetime, *, session: AsyncSession | None = None
    ) -> DoctorAvailabilityWindow | None:
        """Window in which ``start`` falls, used to pick a default appointment length."""
        moment = start.time()
        for window in await self.windows_for(doctor_id, start.weekday(), session=session):
            if window.start_time <= moment < window.end_time:
                return window
        return None

    async def add_window(
        self,
        doctor_id: int,
        weekday: int,
        start_time: time,
        end_time: time,
        *,
        slot_duration_minutes: int | None = None,
        location: str | None = None,
    ) -> DoctorAvailabilityWindow:
        if not 0 <= weekday <= 6:
            raise ValidationError(f"weekday must be between 0 (Monday) and 6 (Sunday), got {weekday}")
        if start_time >= end_time:
            raise InvalidRangeError(f"Window start {start_time} must be before end {end_time}")
        if slot_duration_minutes is not None and slot_duration_minutes <= 0:
            raise ValidationError("slot_duration_minutes must be positive")
        if location and len(location) > settings.max_location_length:
            raise ValidationError(f"location must not exceed {settings.max_location_length} characters")

        async with self._session_maker() as session:
            try:
                async with self._locks.hold(session, AVAILABILITY_LOCK, (doctor_id,)):
                    for existing in await self.windows_for(doctor_id, weekday, session=session):
                        if windows_overlap(start_time, end_time, existing.start_time, existing.end_time):
                            raise OverlappingWindowError(
                                f"Window {start_time}-{end_time} overlaps existing window "
                                f"{existing.start_time}-{existing.end_time} (id={existing.id})"
                            )
                    window = DoctorAvailabilityWindow(
                        doctor_id=doctor_id,
                        weekday=weekday,
                        start_time=start_time,
                        end_time=end_time,
                        slot_duration_minutes=slot_duration_minutes,
                        location=location,
                    )
                    session.add(window)
                    await session.commit()
                    await session.refresh(window)
            except Exception:
                await session.rollback()
                raise
        logger.info(
            "Added availability window %s for doctor %s: weekday=%d %s-%s",
            window.id, doctor_id, weekday, start_time, end_time,
        )
        return window

    async def remove_window(self, window_id: int, *, doctor_id: int | None = None) -> None:
        """Delete a window. Appointments already booked inside it are left untouched."""
        async with self._session_maker() as session:
            window = await session.get(DoctorAvailabilityWindow, window_id)
            if window is None or (doctor_id is not None and window.doctor_id != doctor_id):
                raise NotFoundError(f"Availability window {window_id} not found")
            await session.delete(window)
            await session.commit()
        logger.info("Removed availability window %s for doctor %s", window_id, window.doctor_id)

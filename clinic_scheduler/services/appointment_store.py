"""Persistence contract for appointments.

The scheduling services only talk to appointments through this interface.
A unit of work is opened with ``transaction()``; passing doctor ids makes it
the exclusive booking unit for those doctors (check-then-insert happens
under the lock and the lock is only released after commit or rollback).
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_scheduler.core.locking import DoctorLocks
from clinic_scheduler.models.appointment import (
    ACTIVE_STATUSES,
    OPEN_STATUSES,
    Appointment,
    AppointmentSearchCriteria,
    AppointmentStatus,
)

BOOKING_LOCK = "booking"


class AppointmentStore(ABC):
    @abstractmethod
    def transaction(self, lock_doctor_ids: tuple[int, ...] = ()) -> AbstractAsyncContextManager[AsyncSession]:
        """Session committed on clean exit, rolled back on error or cancellation."""

    @abstractmethod
    def reader(self, session: AsyncSession | None = None) -> AbstractAsyncContextManager[AsyncSession]:
        """Reuse ``session`` if given, otherwise a short-lived read session."""

    @abstractmethod
    async def find_by_id(self, session: AsyncSession, appointment_id: int) -> Appointment | None: ...

    @abstractmethod
    async def find_active_by_doctor_and_range(
        self, session: AsyncSession, doctor_id: int, start: datetime, end: datetime
    ) -> list[Appointment]: ...

    @abstractmethod
    async def find_due_for_no_show(self, session: AsyncSession, cutoff: datetime) -> list[Appointment]: ...

    @abstractmethod
    async def insert(self, session: AsyncSession, appointment: Appointment) -> Appointment: ...

    @abstractmethod
    async def update_if_status(
        self,
        session: AsyncSession,
        appointment_id: int,
        expected_status: AppointmentStatus,
        *,
        started_before: datetime | None = None,
        **values: object,
    ) -> bool: ...

    @abstractmethod
    async def list_by_patient(
        self, session: AsyncSession, patient_id: int, from_time: datetime | None = None
    ) -> list[Appointment]: ...

    @abstractmethod
    async def list_by_doctor_between(
        self, session: AsyncSession, doctor_id: int, start: datetime, end: datetime
    ) -> list[Appointment]: ...

    @abstractmethod
    async def next_for_patient(
        self, session: AsyncSession, patient_id: int, now: datetime
    ) -> Appointment | None: ...

    @abstractmethod
    async def search(self, session: AsyncSession, criteria: AppointmentSearchCriteria) -> list[Appointment]: ...


class SqlAppointmentStore(AppointmentStore):
    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], locks: DoctorLocks | None = None
    ) -> None:
        self._session_maker = session_maker
        self._locks = locks or DoctorLocks()

    @property
    def locks(self) -> DoctorLocks:
        return self._locks

    @asynccontextmanager
    async def transaction(self, lock_doctor_ids: tuple[int, ...] = ()) -> AsyncIterator[AsyncSession]:
        async with self._session_maker() as session:
            try:
                if lock_doctor_ids:
                    async with self._locks.hold(session, BOOKING_LOCK, lock_doctor_ids):
                        yield session
                        await session.commit()
                else:
                    yield session
                    await session.commit()
            except BaseException:
                # also on cancellation, so a flushed insert never outlives its task
                await session.rollback()
                raise

    @asynccontextmanager
    async def reader(self, session: AsyncSession | None = None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._session_maker() as own:
            yield own

    async def find_by_id(self, session: AsyncSession, appointment_id: int) -> Appointment | None:
        # populate_existing: a conditional UPDATE may have changed the row under the identity map
        return await session.get(Appointment, appointment_id, populate_existing=True)

    async def find_active_by_doctor_and_range(
        self, session: AsyncSession, doctor_id: int, start: datetime, end: datetime
    ) -> list[Appointment]:
        result = await session.execute(
            select(Appointment)
            .where(
                Appointment.doctor_id == doctor_id,
                Appointment.status.in_(ACTIVE_STATUSES),
                Appointment.start_utc < end,
                Appointment.end_utc > start,
            )
            .order_by(Appointment.start_utc)
        )
        return list(result.scalars().all())

    async def find_due_for_no_show(self, session: AsyncSession, cutoff: datetime) -> list[Appointment]:
        result = await session.execute(
            select(Appointment)
            .where(
                Appointment.status.in_(OPEN_STATUSES),
                Appointment.start_utc < cutoff,
            )
            .order_by(Appointment.start_utc)
        )
        return list(result.scalars().all())

    async def insert(self, session: AsyncSession, appointment: Appointment) -> Appointment:
        session.add(appointment)
        await session.flush()
        await session.refresh(appointment)
        return appointment

    async def update_if_status(
        self,
        session: AsyncSession,
        appointment_id: int,
        expected_status: AppointmentStatus,
        *,
        started_before: datetime | None = None,
        **values: object,
    ) -> bool:
        """UPDATE ... WHERE id = ? AND status = ?; False when the row no longer matches."""
        stmt = update(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.status == expected_status,
        )
        if started_before is not None:
            stmt = stmt.where(Appointment.start_utc < started_before)
        result = await session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def list_by_patient(
        self, session: AsyncSession, patient_id: int, from_time: datetime | None = None
    ) -> list[Appointment]:
        q = select(Appointment).where(Appointment.patient_id == patient_id).order_by(Appointment.start_utc)
        if from_time:
            q = q.where(Appointment.start_utc >= from_time)
        result = await session.execute(q)
        return list(result.scalars().all())

    async def list_by_doctor_between(
        self, session: AsyncSession, doctor_id: int, start: datetime, end: datetime
    ) -> list[Appointment]:
        result = await session.execute(
            select(Appointment)
            .where(
                Appointment.doctor_id == doctor_id,
                Appointment.start_utc >= start,
                Appointment.start_utc < end,
            )
            .order_by(Appointment.start_utc)
        )
        return list(result.scalars().all())

    async def next_for_patient(
        self, session: AsyncSession, patient_id: int, now: datetime
    ) -> Appointment | None:
        result = await session.execute(
            select(Appointment)
            .where(
                Appointment.patient_id == patient_id,
                Appointment.status.in_(OPEN_STATUSES),
                Appointment.start_utc >= now,
            )
            .order_by(Appointment.start_utc)
            .limit(1)
        )
        return result.scalars().first()

    async def search(self, session: AsyncSession, criteria: AppointmentSearchCriteria) -> list[Appointment]:
        q = select(Appointment)
        if criteria.doctor_id is not None:
            q = q.where(Appointment.doctor_id == criteria.doctor_id)
        if criteria.patient_id is not None:
            q = q.where(Appointment.patient_id == criteria.patient_id)
        if criteria.status is not None:
            q = q.where(Appointment.status == criteria.status)
        if criteria.start_from is not None:
            q = q.where(Appointment.start_utc >= criteria.start_from)
        if criteria.start_to is not None:
            q = q.where(Appointment.start_utc < criteria.start_to)
        if criteria.confirmed is not None:
            q = q.where(Appointment.confirmed == criteria.confirmed)
        if criteria.location:
            q = q.where(Appointment.location == criteria.location)
        if criteria.reason_pattern:
            q = q.where(func.lower(Appointment.reason).contains(criteria.reason_pattern.lower()))
        result = await session.execute(q.order_by(Appointment.start_utc))
        return list(result.scalars().all())

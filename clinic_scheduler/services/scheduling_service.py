"""Entry point for the scheduling core: one object wired with every collaborator.

The API layer and the background sweep only go through ``SchedulingService``.
"""

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_scheduler.core.clock import Clock, to_naive_utc, utc_naive_now
from clinic_scheduler.core.config import Settings, settings
from clinic_scheduler.core.exceptions import NotFoundError
from clinic_scheduler.core.locking import DoctorLocks
from clinic_scheduler.models.appointment import Appointment, AppointmentSearchCriteria
from clinic_scheduler.models.availability import DoctorAvailabilityWindow
from clinic_scheduler.services.appointment_service import AppointmentLifecycle
from clinic_scheduler.services.appointment_store import AppointmentStore, SqlAppointmentStore
from clinic_scheduler.services.conflict_detector import ConflictDetector
from clinic_scheduler.services.directory import InMemoryDirectory, ParticipantDirectory
from clinic_scheduler.services.events import AppointmentEventBus, log_status_change
from clinic_scheduler.services.no_show_sweeper import NoShowSweeper
from clinic_scheduler.services.schedule_catalog import ScheduleCatalog
from clinic_scheduler.services.slot_service import FreeSlots, SlotCalculator

logger = logging.getLogger(__name__)


class SchedulingService:
    def __init__(
        self,
        store: AppointmentStore,
        catalog: ScheduleCatalog,
        directory: ParticipantDirectory,
        events: AppointmentEventBus,
        *,
        clock: Clock = utc_naive_now,
        config: Settings = settings,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.events = events
        self.detector = ConflictDetector(store)
        self.slots = SlotCalculator(catalog, store)
        self.lifecycle = AppointmentLifecycle(
            store, catalog, self.detector, directory, events, clock=clock, config=config
        )
        self.sweeper = NoShowSweeper(store, self.lifecycle)
        self._clock = clock
        self._config = config

    # --- commands ---

    async def create_appointment(
        self,
        doctor_id: int,
        patient_id: int,
        start: datetime,
        end: datetime | None = None,
        *,
        reason: str,
        created_by: str,
        notes: str | None = None,
        location: str | None = None,
    ) -> Appointment:
        return await self.lifecycle.create(
            doctor_id,
            patient_id,
            start,
            end,
            reason=reason,
            created_by=created_by,
            notes=notes,
            location=location,
        )

    async def confirm_appointment(self, appointment_id: int) -> Appointment:
        return await self.lifecycle.confirm(appointment_id)

    async def cancel_appointment(self, appointment_id: int, reason: str) -> Appointment:
        return await self.lifecycle.cancel(appointment_id, reason)

    async def complete_appointment(self, appointment_id: int, notes: str | None = None) -> Appointment:
        return await self.lifecycle.complete(appointment_id, notes)

    async def reschedule_appointment(
        self, appointment_id: int, new_start: datetime, new_end: datetime | None = None
    ) -> Appointment:
        return await self.lifecycle.reschedule(appointment_id, new_start, new_end)

    async def get_free_slots(
        self, doctor_id: int, on_date: date, slot_duration: timedelta | int
    ) -> FreeSlots:
        return await self.slots.free_slots(doctor_id, on_date, slot_duration)

    async def run_no_show_sweep(
        self, now: datetime | None = None, grace_minutes: int | None = None
    ) -> int:
        return await self.sweeper.sweep(
            now or self._clock(),
            self._config.no_show_grace_minutes if grace_minutes is None else grace_minutes,
        )

    # --- availability ---

    async def add_availability(
        self,
        doctor_id: int,
        weekday: int,
        start_time: time,
        end_time: time,
        *,
        slot_duration_minutes: int | None = None,
        location: str | None = None,
    ) -> DoctorAvailabilityWindow:
        return await self.catalog.add_window(
            doctor_id,
            weekday,
            start_time,
            end_time,
            slot_duration_minutes=slot_duration_minutes,
            location=location,
        )

    async def list_availability(self, doctor_id: int) -> list[DoctorAvailabilityWindow]:
        return await self.catalog.list_windows(doctor_id)

    async def get_availability(self, window_id: int, *, doctor_id: int | None = None) -> DoctorAvailabilityWindow:
        return await self.catalog.get_window(window_id, doctor_id=doctor_id)

    async def remove_availability(self, window_id: int, *, doctor_id: int | None = None) -> None:
        await self.catalog.remove_window(window_id, doctor_id=doctor_id)

    # --- queries ---

    async def get_appointment(self, appointment_id: int) -> Appointment:
        async with self.store.reader() as session:
            appointment = await self.store.find_by_id(session, appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    async def list_patient_appointments(
        self, patient_id: int, from_date: date | None = None
    ) -> list[Appointment]:
        from_time = datetime.combine(from_date, time.min) if from_date else None
        async with self.store.reader() as session:
            return await self.store.list_by_patient(session, patient_id, from_time)

    async def list_doctor_appointments(self, doctor_id: int, on_date: date) -> list[Appointment]:
        day_start = datetime.combine(on_date, time.min)
        async with self.store.reader() as session:
            return await self.store.list_by_doctor_between(
                session, doctor_id, day_start, day_start + timedelta(days=1)
            )

    async def next_appointment_for_patient(
        self, patient_id: int, now: datetime | None = None
    ) -> Appointment | None:
        moment = to_naive_utc(now) if now else self._clock()
        async with self.store.reader() as session:
            return await self.store.next_for_patient(session, patient_id, moment)

    async def search_appointments(self, criteria: AppointmentSearchCriteria) -> list[Appointment]:
        async with self.store.reader() as session:
            return await self.store.search(session, criteria)


def build_scheduling_service(
    session_maker: async_sessionmaker[AsyncSession],
    config: Settings = settings,
    *,
    directory: ParticipantDirectory | None = None,
    events: AppointmentEventBus | None = None,
    clock: Clock = utc_naive_now,
) -> SchedulingService:
    """Wire the default SQL-backed service. Booking and availability share one lock registry."""
    locks = DoctorLocks()
    if events is None:
        events = AppointmentEventBus(maxsize=config.event_queue_size)
        events.subscribe(log_status_change)
    return SchedulingService(
        SqlAppointmentStore(session_maker, locks),
        ScheduleCatalog(session_maker, locks),
        directory or InMemoryDirectory(),
        events,
        clock=clock,
        config=config,
    )

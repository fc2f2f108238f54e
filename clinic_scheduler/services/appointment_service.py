import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_scheduler.core.clock import Clock, to_naive_utc, utc_naive_now
from clinic_scheduler.core.config import Settings, settings
from clinic_scheduler.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    OutOfScheduleError,
    ValidationError,
)
from clinic_scheduler.models.appointment import Appointment, AppointmentStatus
from clinic_scheduler.models.availability import DoctorAvailabilityWindow
from clinic_scheduler.services.appointment_store import AppointmentStore
from clinic_scheduler.services.conflict_detector import ConflictDetector
from clinic_scheduler.services.directory import ParticipantDirectory
from clinic_scheduler.services.events import AppointmentEvent, AppointmentEventBus
from clinic_scheduler.services.schedule_catalog import ScheduleCatalog
from clinic_scheduler.services.transitions import LifecycleOperation, next_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures worth another attempt at the booking unit: lock timeouts, deadlocks, dropped connections
TRANSIENT_ERRORS = (OperationalError, TimeoutError)


def _require_text(value: str | None, field: str, max_length: int) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required")
    if len(cleaned) > max_length:
        raise ValidationError(f"{field} must not exceed {max_length} characters")
    return cleaned


def _optional_text(value: str | None, field: str, max_length: int) -> str | None:
    if value is None or not value.strip():
        return None
    return _require_text(value, field, max_length)


class AppointmentLifecycle:
    """Status transitions of an appointment, including the atomic booking unit."""

    def __init__(
        self,
        store: AppointmentStore,
        catalog: ScheduleCatalog,
        detector: ConflictDetector,
        directory: ParticipantDirectory,
        events: AppointmentEventBus,
        *,
        clock: Clock = utc_naive_now,
        config: Settings = settings,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._detector = detector
        self._directory = directory
        self._events = events
        self._clock = clock
        self._config = config

    # --- create / reschedule (atomic with the conflict check) ---

    async def create(
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
        reason = _require_text(reason, "reason", self._config.max_reason_length)
        created_by = _require_text(created_by, "created_by", self._config.max_created_by_length)
        notes = _optional_text(notes, "notes", self._config.max_notes_length)
        location = _optional_text(location, "location", self._config.max_location_length)
        start, end = self._normalize_interval(start, end)
        now = self._clock()
        self._reject_past(start, now)

        if not await self._directory.doctor_exists(doctor_id):
            raise NotFoundError(f"Doctor {doctor_id} not found")
        if not await self._directory.patient_exists(patient_id):
            raise NotFoundError(f"Patient {patient_id} not found")

        async def unit() -> Appointment:
            async with self._store.transaction((doctor_id,)) as session:
                booked_end, window = await self._place(session, doctor_id, start, end)
                await self._reject_conflicts(session, doctor_id, start, booked_end)
                appointment = Appointment(
                    doctor_id=doctor_id,
                    patient_id=patient_id,
                    start_utc=start,
                    end_utc=booked_end,
                    status=AppointmentStatus.SCHEDULED,
                    reason=reason,
                    notes=notes,
                    location=location or window.location,
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                )
                return await self._store.insert(session, appointment)

        appointment = await self._run_atomic("create", unit)
        logger.info(
            "Created appointment %s: doctor=%s patient=%s %s-%s by %s",
            appointment.id, doctor_id, patient_id, appointment.start_utc, appointment.end_utc, created_by,
        )
        self._publish(appointment, None, now)
        return appointment

    async def reschedule(
        self, appointment_id: int, new_start: datetime, new_end: datetime | None = None
    ) -> Appointment:
        """Book the new interval and cancel the old record in one unit; returns the new record."""
        new_start, new_end = self._normalize_interval(new_start, new_end)
        now = self._clock()
        self._reject_past(new_start, now)

        async with self._store.reader() as session:
            seen = await self._load(session, appointment_id)
        next_status(seen.status, LifecycleOperation.RESCHEDULE)
        doctor_id = seen.doctor_id

        async def unit() -> tuple[Appointment, AppointmentStatus, Appointment]:
            async with self._store.transaction((doctor_id,)) as session:
                original = await self._load(session, appointment_id)
                previous = original.status
                if previous != seen.status:
                    raise ConcurrentModificationError(
                        f"Appointment {appointment_id} changed from {seen.status.value} to "
                        f"{previous.value} while rescheduling"
                    )
                target = next_status(previous, LifecycleOperation.RESCHEDULE)
                end = new_end or new_start + (original.end_utc - original.start_utc)
                end, window = await self._place(session, doctor_id, new_start, end)
                await self._reject_conflicts(session, doctor_id, new_start, end, exclude=appointment_id)
                replacement = await self._store.insert(
                    session,
                    Appointment(
                        doctor_id=doctor_id,
                        patient_id=original.patient_id,
                        start_utc=new_start,
                        end_utc=end,
                        status=target,
                        reason=original.reason,
                        notes=original.notes,
                        location=original.location or window.location,
                        created_by=original.created_by,
                        created_at=now,
                        updated_at=now,
                        rescheduled_from_id=original.id,
                    ),
                )
                canceled = await self._store.update_if_status(
                    session,
                    appointment_id,
                    previous,
                    status=AppointmentStatus.CANCELED,
                    cancellation_reason=f"Rescheduled to appointment {replacement.id}",
                    canceled_at=now,
                    updated_at=now,
                )
                if not canceled:
                    raise ConcurrentModificationError(
                        f"Appointment {appointment_id} changed concurrently while rescheduling"
                    )
                original = await self._load(session, appointment_id)
                return original, previous, replacement

        original, previous, replacement = await self._run_atomic("reschedule", unit)
        logger.info(
            "Rescheduled appointment %s -> %s: %s-%s",
            appointment_id, replacement.id, replacement.start_utc, replacement.end_utc,
        )
        self._publish(original, previous, now)
        self._publish(replacement, None, now)
        return replacement

    # --- guarded status updates ---

    async def confirm(self, appointment_id: int) -> Appointment:
        now = self._clock()
        return await self._transition(
            appointment_id,
            LifecycleOperation.CONFIRM,
            now,
            {"confirmed": True, "confirmation_timestamp": now},
        )

    async def cancel(self, appointment_id: int, reason: str) -> Appointment:
        reason = _require_text(reason, "Cancellation reason", self._config.max_reason_length)
        now = self._clock()
        return await self._transition(
            appointment_id,
            LifecycleOperation.CANCEL,
            now,
            {"cancellation_reason": reason, "canceled_at": now},
        )

    async def complete(self, appointment_id: int, notes: str | None = None) -> Appointment:
        notes = _optional_text(notes, "notes", self._config.max_notes_length)
        now = self._clock()

        def started(appointment: Appointment) -> None:
            if now < appointment.start_utc:
                raise InvalidTransitionError(
                    f"Appointment {appointment.id} cannot be completed before it starts "
                    f"({appointment.start_utc.isoformat()})"
                )

        values = {"notes": notes} if notes else {}
        return await self._transition(appointment_id, LifecycleOperation.COMPLETE, now, values, started)

    async def mark_no_show(
        self,
        appointment_id: int,
        expected_status: AppointmentStatus,
        *,
        cutoff: datetime,
        now: datetime,
    ) -> bool:
        """Conditional NO_SHOW write. False when the record moved on since it was read."""
        next_status(expected_status, LifecycleOperation.MARK_NO_SHOW)
        async with self._store.transaction() as session:
            changed = await self._store.update_if_status(
                session,
                appointment_id,
                expected_status,
                started_before=cutoff,
                status=AppointmentStatus.NO_SHOW,
                updated_at=now,
            )
            if not changed:
                return False
            appointment = await self._load(session, appointment_id)
        logger.info("Appointment %s marked NO_SHOW (was %s)", appointment_id, expected_status.value)
        self._publish(appointment, expected_status, now)
        return True

    async def _transition(
        self,
        appointment_id: int,
        operation: LifecycleOperation,
        now: datetime,
        values: dict[str, object],
        precheck: Callable[[Appointment], None] | None = None,
    ) -> Appointment:
        async with self._store.transaction() as session:
            appointment = await self._load(session, appointment_id)
            previous = appointment.status
            target = next_status(previous, operation)
            if precheck is not None:
                precheck(appointment)
            updated = await self._store.update_if_status(
                session, appointment_id, previous, status=target, updated_at=now, **values
            )
            if not updated:
                logger.warning(
                    "Lost race on %s for appointment %s (expected %s)",
                    operation.value, appointment_id, previous.value,
                )
                raise ConcurrentModificationError(
                    f"Appointment {appointment_id} changed concurrently; retry the {operation.value}"
                )
            appointment = await self._load(session, appointment_id)
        logger.info("Appointment %s: %s -> %s", appointment_id, previous.value, target.value)
        self._publish(appointment, previous, now)
        return appointment

    # --- helpers ---

    async def _load(self, session: AsyncSession, appointment_id: int) -> Appointment:
        appointment = await self._store.find_by_id(session, appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    def _normalize_interval(
        self, start: datetime, end: datetime | None
    ) -> tuple[datetime, datetime | None]:
        start = to_naive_utc(start)
        end = to_naive_utc(end) if end is not None else None
        if end is not None and start >= end:
            raise ValidationError(f"Appointment start {start.isoformat()} must be before end {end.isoformat()}")
        return start, end

    @staticmethod
    def _reject_past(start: datetime, now: datetime) -> None:
        if start < now:
            raise ValidationError(f"Appointment start {start.isoformat()} is in the past")

    async def _place(
        self, session: AsyncSession, doctor_id: int, start: datetime, end: datetime | None
    ) -> tuple[datetime, DoctorAvailabilityWindow]:
        """Resolve the end (window default length if omitted) and the window that contains the interval."""
        if end is None:
            opening = await self._catalog.window_at(doctor_id, start, session=session)
            if opening is None:
                raise OutOfScheduleError(
                    f"Doctor {doctor_id} is not available on {start:%A} at {start:%H:%M}"
                )
            minutes = opening.slot_duration_minutes or self._config.default_slot_duration_minutes
            end = start + timedelta(minutes=minutes)
        window = await self._catalog.window_containing(doctor_id, start, end, session=session)
        if window is None:
            raise OutOfScheduleError(
                f"{start:%A %Y-%m-%d %H:%M}-{end:%H:%M} is outside doctor {doctor_id}'s availability"
            )
        return end, window

    async def _reject_conflicts(
        self,
        session: AsyncSession,
        doctor_id: int,
        start: datetime,
        end: datetime,
        exclude: int | None = None,
    ) -> None:
        conflicts = await self._detector.find_conflicts(doctor_id, start, end, exclude, session=session)
        if conflicts:
            ids = ", ".join(str(a.id) for a in conflicts)
            raise ConflictError(
                f"Doctor {doctor_id} already has appointment(s) {ids} overlapping "
                f"{start.isoformat()}-{end.isoformat()}"
            )

    async def _run_atomic(self, action: str, unit: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self._config.booking_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await unit()
            except TRANSIENT_ERRORS as exc:
                if attempt == attempts:
                    logger.error("%s failed after %d attempts: %s", action, attempts, exc)
                    raise InfrastructureError(
                        f"Could not {action} appointment: storage unavailable"
                    ) from exc
                delay = self._config.booking_retry_backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "Transient failure during %s (attempt %d/%d): %s; retrying in %.2fs",
                    action, attempt, attempts, exc, delay,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    def _publish(
        self, appointment: Appointment, previous: AppointmentStatus | None, occurred_at: datetime
    ) -> None:
        try:
            self._events.publish(AppointmentEvent.for_transition(appointment, previous, occurred_at))
        except Exception:
            logger.exception("Could not publish status change for appointment %s", appointment.id)

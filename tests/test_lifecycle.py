import asyncio
from datetime import datetime, time, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from conftest import DOCTOR_ID, MONDAY, OTHER_DOCTOR_ID, OTHER_PATIENT_ID, PATIENT_ID, at
from clinic_scheduler.core.config import Settings
from clinic_scheduler.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    OutOfScheduleError,
    ValidationError,
)
from clinic_scheduler.models.appointment import AppointmentSearchCriteria, AppointmentStatus
from clinic_scheduler.services.scheduling_service import build_scheduling_service


def book(scheduler, start, end=None, *, patient_id=PATIENT_ID, doctor_id=DOCTOR_ID, **kwargs):
    kwargs.setdefault("reason", "Check-up")
    kwargs.setdefault("created_by", "reception")
    return scheduler.create_appointment(doctor_id, patient_id, start, end, **kwargs)


class TestCreate:
    def test_create_inside_window_is_scheduled(self, scheduler, monday_clinic, clock) -> None:
        appointment = asyncio.run(book(scheduler, at(10), at(10, 30), notes="Bring previous results"))

        assert appointment.id is not None
        assert appointment.status == AppointmentStatus.SCHEDULED
        assert appointment.confirmed is False
        assert appointment.location == "Room 4"
        assert appointment.notes == "Bring previous results"
        assert appointment.created_at == clock.now
        assert appointment.updated_at == clock.now

    def test_overlapping_booking_conflicts(self, scheduler, monday_clinic) -> None:
        asyncio.run(book(scheduler, at(10), at(10, 30)))

        with pytest.raises(ConflictError):
            asyncio.run(book(scheduler, at(9, 45), at(10, 15), patient_id=OTHER_PATIENT_ID))

    def test_back_to_back_bookings_do_not_conflict(self, scheduler, monday_clinic) -> None:
        async def scenario():
            first = await book(scheduler, at(10), at(10, 30))
            second = await book(scheduler, at(10, 30), at(11), patient_id=OTHER_PATIENT_ID)
            return first, second

        first, second = asyncio.run(scenario())

        assert first.end_utc == second.start_utc

    def test_same_interval_other_doctor_is_independent(self, scheduler, monday_clinic) -> None:
        async def scenario():
            await scheduler.add_availability(OTHER_DOCTOR_ID, 0, time(9, 0), time(12, 0))
            await book(scheduler, at(10), at(10, 30))
            return await book(scheduler, at(10), at(10, 30), doctor_id=OTHER_DOCTOR_ID)

        assert asyncio.run(scenario()).doctor_id == OTHER_DOCTOR_ID

    def test_outside_window_is_out_of_schedule(self, scheduler, monday_clinic) -> None:
        with pytest.raises(OutOfScheduleError):
            asyncio.run(book(scheduler, at(8, 30), at(9)))

    def test_spilling_past_window_end_is_out_of_schedule(self, scheduler, monday_clinic) -> None:
        with pytest.raises(OutOfScheduleError):
            asyncio.run(book(scheduler, at(11, 45), at(12, 15)))

    def test_start_in_the_past_is_rejected(self, scheduler, monday_clinic, clock) -> None:
        clock.now = at(10)

        with pytest.raises(ValidationError):
            asyncio.run(book(scheduler, at(9, 55), at(10, 25)))

    @pytest.mark.parametrize("end_hour_minute", [(10, 0), (9, 30)])
    def test_start_must_precede_end(self, scheduler, monday_clinic, end_hour_minute) -> None:
        with pytest.raises(ValidationError):
            asyncio.run(book(scheduler, at(10), at(*end_hour_minute)))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"reason": "   "},
            {"reason": "x" * 256},
            {"created_by": ""},
            {"created_by": "c" * 101},
            {"notes": "n" * 1001},
            {"location": "l" * 51},
        ],
    )
    def test_field_rules(self, scheduler, monday_clinic, overrides) -> None:
        with pytest.raises(ValidationError):
            asyncio.run(book(scheduler, at(10), at(10, 30), **overrides))

    def test_unknown_participants_are_not_found(self, scheduler, monday_clinic) -> None:
        with pytest.raises(NotFoundError):
            asyncio.run(book(scheduler, at(10), at(10, 30), doctor_id=99))
        with pytest.raises(NotFoundError):
            asyncio.run(book(scheduler, at(10), at(10, 30), patient_id=99))

    def test_end_defaults_to_window_slot_length(self, scheduler) -> None:
        async def scenario():
            await scheduler.add_availability(DOCTOR_ID, 0, time(9, 0), time(12, 0), slot_duration_minutes=20)
            await scheduler.add_availability(DOCTOR_ID, 0, time(13, 0), time(15, 0))
            return await book(scheduler, at(9)), await book(scheduler, at(13))

        with_length, without_length = asyncio.run(scenario())

        assert with_length.end_utc == at(9, 20)
        assert without_length.end_utc == at(13, 30)

    def test_aware_datetimes_are_stored_as_naive_utc(self, scheduler, monday_clinic) -> None:
        plus_two = timezone(timedelta(hours=2))
        start = datetime(2030, 1, 7, 12, 0, tzinfo=plus_two)

        appointment = asyncio.run(book(scheduler, start, start + timedelta(minutes=30)))

        assert appointment.start_utc == at(10)
        assert appointment.start_utc.tzinfo is None

    def test_concurrent_creates_exactly_one_wins(self, scheduler, monday_clinic) -> None:
        async def scenario():
            return await asyncio.gather(
                book(scheduler, at(10), at(10, 30)),
                book(scheduler, at(10, 15), at(10, 45), patient_id=OTHER_PATIENT_ID),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        created = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(created) == 1
        assert len(errors) == 1 and isinstance(errors[0], ConflictError)

    def test_no_overlap_under_many_concurrent_creates(self, scheduler, monday_clinic) -> None:
        starts = [at(9, m) for m in range(0, 60, 10)] * 2

        async def scenario():
            await asyncio.gather(
                *(book(scheduler, s, s + timedelta(minutes=25), patient_id=12) for s in starts),
                return_exceptions=True,
            )
            return await scheduler.list_doctor_appointments(DOCTOR_ID, MONDAY)

        booked = asyncio.run(scenario())

        assert booked
        for i, a in enumerate(booked):
            for b in booked[i + 1:]:
                assert a.end_utc <= b.start_utc or b.end_utc <= a.start_utc

    def test_create_cancelled_after_flush_leaves_nothing(self, scheduler, monday_clinic, monkeypatch) -> None:
        original = scheduler.store.insert

        async def scenario():
            flushed = asyncio.Event()

            async def stalled_insert(session, appointment):
                inserted = await original(session, appointment)
                flushed.set()
                await asyncio.sleep(3600)
                return inserted

            monkeypatch.setattr(scheduler.store, "insert", stalled_insert)
            task = asyncio.create_task(book(scheduler, at(10), at(10, 30)))
            await flushed.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            monkeypatch.setattr(scheduler.store, "insert", original)

            left_over = await scheduler.list_doctor_appointments(DOCTOR_ID, MONDAY)
            rebooked = await book(scheduler, at(10), at(10, 30), patient_id=OTHER_PATIENT_ID)
            return left_over, rebooked

        left_over, rebooked = asyncio.run(scenario())

        assert left_over == []
        assert rebooked.status == AppointmentStatus.SCHEDULED
        assert rebooked.patient_id == OTHER_PATIENT_ID


class TestTransitions:
    def test_confirm_sets_flag_and_timestamp(self, scheduler, monday_clinic, clock) -> None:
        async def scenario():
            appointment = await book(scheduler, at(10), at(10, 30))
            clock.advance(hours=1)
            return await scheduler.confirm_appointment(appointment.id)

        confirmed = asyncio.run(scenario())

        assert confirmed.status == AppointmentStatus.CONFIRMED
        assert confirmed.confirmed is True
        assert confirmed.confirmation_timestamp == clock.now
        assert confirmed.updated_at == clock.now

    def test_confirm_twice_is_invalid(self, scheduler, monday_clinic) -> None:
        async def scenario():
            appointment = await book(scheduler, at(10), at(10, 30))
            await scheduler.confirm_appointment(appointment.id)
            await scheduler.confirm_appointment(appointment.id)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_cancel_records_reason_and_frees_interval(self, scheduler, monday_clinic, clock) -> None:
        async def scenario():
            appointment = await book(scheduler, at(10), at(10, 30))
            canceled = await scheduler.cancel_appointment(appointment.id, "Patient request")
            again = await book(scheduler, at(10), at(10, 30), patient_id=OTHER_PATIENT_ID)
            return canceled, again

        canceled, again = asyncio.run(scenario())

        assert canceled.status == AppointmentStatus.CANCELED
        assert canceled.cancellation_reason == "Patient request"
        assert canceled.canceled_at == clock.now
        assert again.status == AppointmentStatus.SCHEDULED

    def test_cancel_requires_reason(self, scheduler, monday_clinic) -> None:
        appointment = asyncio.run(book(scheduler, at(10), at(10, 30)))

        with pytest.raises(ValidationError):
            asyncio.run(scheduler.cancel_appointment(appointment.id, " "))
        assert asyncio.run(scheduler.get_appointment(appointment.id)).status == AppointmentStatus.SCHEDULED

    def test_cancel_terminal_is_invalid(self, scheduler, monday_clinic) -> None:
        async def scenario():
            appointment = await book(scheduler, at(10), at(10, 30))
            await scheduler.cancel_appointment(appointment.id, "First")
            await scheduler.cancel_appointment(appointment.id, "Second")

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_complete_before_start_is_invalid(self, scheduler, monday_clinic) -> None:
        appointment = asyncio.run(book(scheduler, at(10), at(10, 30)))

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scheduler.complete_appointment(appointment.id))

    def test_complete_after_start_replaces_notes(self, scheduler, monday_clinic, clock) -> None:
        appointment = asyncio.run(book(scheduler, at(10), at(10, 30), notes="Pre-visit"))
        clock.now = at(10, 20)

        completed = asyncio.run(scheduler.complete_appointment(appointment.id, "Prescribed rest"))

        assert completed.status == AppointmentStatus.COMPLETED
        assert completed.notes == "Prescribed rest"

    def test_unknown_appointment_is_not_found(self, scheduler) -> None:
        for operation in (
            scheduler.confirm_appointment(404),
            scheduler.cancel_appointment(404, "Gone"),
            scheduler.complete_appointment(404),
            scheduler.reschedule_appointment(404, at(10)),
            scheduler.get_appointment(404),
        ):
            with pytest.raises(NotFoundError):
                asyncio.run(operation)

    def test_lost_status_race_raises_concurrent_modification(self, scheduler, monday_clinic, monkeypatch) -> None:
        store = scheduler.store
        original_update = store.update_if_status

        async def update_after_someone_else(session, appointment_id, expected_status, **kwargs):
            # Another writer moved the record between our read and our write
            return await original_update(session, appointment_id, AppointmentStatus.NO_SHOW, **kwargs)

        appointment = asyncio.run(book(scheduler, at(10), at(10, 30)))
        monkeypatch.setattr(store, "update_if_status", update_after_someone_else)

        with pytest.raises(ConcurrentModificationError):
            asyncio.run(scheduler.confirm_appointment(appointment.id))


class TestReschedule:
    def test_reschedule_moves_and_links_records(self, scheduler, monday_clinic) -> None:
        async def scenario():
            original = await book(scheduler, at(10), at(10, 30), notes="Allergic to penicillin")
            await scheduler.confirm_appointment(original.id)
            moved = await scheduler.reschedule_appointment(original.id, at(11), at(11, 30))
            return original, moved, await scheduler.get_appointment(original.id)

        original, moved, old = asyncio.run(scenario())

        assert moved.id != original.id
        assert moved.status == AppointmentStatus.SCHEDULED
        assert moved.confirmed is False
        assert (moved.start_utc, moved.end_utc) == (at(11), at(11, 30))
        assert moved.rescheduled_from_id == original.id
        assert moved.patient_id == original.patient_id
        assert moved.reason == original.reason
        assert moved.notes == "Allergic to penicillin"
        assert old.status == AppointmentStatus.CANCELED
        assert old.cancellation_reason == f"Rescheduled to appointment {moved.id}"

    def test_reschedule_keeps_duration_when_end_omitted(self, scheduler, monday_clinic) -> None:
        async def scenario():
            original = await book(scheduler, at(9), at(9, 45))
            return await scheduler.reschedule_appointment(original.id, at(11))

        assert asyncio.run(scenario()).end_utc == at(11, 45)

    def test_reschedule_may_overlap_its_own_old_interval(self, scheduler, monday_clinic) -> None:
        async def scenario():
            original = await book(scheduler, at(10), at(10, 30))
            return await scheduler.reschedule_appointment(original.id, at(10, 15), at(10, 45))

        assert asyncio.run(scenario()).start_utc == at(10, 15)

    def test_reschedule_into_conflict_leaves_original(self, scheduler, monday_clinic) -> None:
        async def attempt():
            original = await book(scheduler, at(10), at(10, 30))
            await book(scheduler, at(11), at(11, 30), patient_id=OTHER_PATIENT_ID)
            with pytest.raises(ConflictError):
                await scheduler.reschedule_appointment(original.id, at(11, 15), at(11, 45))
            return await scheduler.get_appointment(original.id), await scheduler.list_doctor_appointments(
                DOCTOR_ID, MONDAY
            )

        original, day = asyncio.run(attempt())

        assert original.status == AppointmentStatus.SCHEDULED
        assert len(day) == 2

    def test_reschedule_outside_window(self, scheduler, monday_clinic) -> None:
        original = asyncio.run(book(scheduler, at(10), at(10, 30)))

        with pytest.raises(OutOfScheduleError):
            asyncio.run(scheduler.reschedule_appointment(original.id, at(13), at(13, 30)))

    def test_reschedule_terminal_is_invalid(self, scheduler, monday_clinic) -> None:
        async def scenario():
            original = await book(scheduler, at(10), at(10, 30))
            await scheduler.cancel_appointment(original.id, "No longer needed")
            await scheduler.reschedule_appointment(original.id, at(11))

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_racing_reschedules_only_one_applies(self, scheduler, monday_clinic) -> None:
        async def scenario():
            original = await book(scheduler, at(10), at(10, 30))
            results = await asyncio.gather(
                scheduler.reschedule_appointment(original.id, at(11), at(11, 30)),
                scheduler.reschedule_appointment(original.id, at(9), at(9, 30)),
                return_exceptions=True,
            )
            return results, await scheduler.list_doctor_appointments(DOCTOR_ID, MONDAY)

        results, day = asyncio.run(scenario())

        moved = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(moved) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (ConcurrentModificationError, InvalidTransitionError))
        assert [a.status for a in day if a.is_active] == [AppointmentStatus.SCHEDULED]


class TestRetries:
    def test_transient_failures_are_retried(self, session_maker, clock, monday_clinic, monkeypatch) -> None:
        config = Settings(booking_retry_attempts=3, booking_retry_backoff_seconds=0)
        service = build_scheduling_service(session_maker, config, clock=clock)
        calls = []
        original = service.catalog.window_containing

        async def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("SELECT ...", {}, Exception("database is locked"))
            return await original(*args, **kwargs)

        monkeypatch.setattr(service.catalog, "window_containing", flaky)

        appointment = asyncio.run(book(service, at(10), at(10, 30)))

        assert len(calls) == 3
        assert appointment.status == AppointmentStatus.SCHEDULED

    def test_exhausted_retries_raise_infrastructure_error(
        self, session_maker, clock, monday_clinic, monkeypatch
    ) -> None:
        config = Settings(booking_retry_attempts=2, booking_retry_backoff_seconds=0)
        service = build_scheduling_service(session_maker, config, clock=clock)

        async def down(*args, **kwargs):
            raise OperationalError("SELECT ...", {}, Exception("could not connect"))

        monkeypatch.setattr(service.catalog, "window_containing", down)

        with pytest.raises(InfrastructureError):
            asyncio.run(book(service, at(10), at(10, 30)))
        assert asyncio.run(service.list_doctor_appointments(DOCTOR_ID, MONDAY)) == []

    def test_business_errors_are_not_retried(self, session_maker, clock, monday_clinic, monkeypatch) -> None:
        config = Settings(booking_retry_attempts=5, booking_retry_backoff_seconds=0)
        service = build_scheduling_service(session_maker, config, clock=clock)
        calls = []
        original = service.detector.find_conflicts

        async def counting(*args, **kwargs):
            calls.append(1)
            return await original(*args, **kwargs)

        monkeypatch.setattr(service.detector, "find_conflicts", counting)
        asyncio.run(book(service, at(10), at(10, 30)))

        with pytest.raises(ConflictError):
            asyncio.run(book(service, at(10), at(10, 30), patient_id=OTHER_PATIENT_ID))
        assert len(calls) == 2


class TestQueries:
    def test_patient_listing_and_next_appointment(self, scheduler, monday_clinic, clock) -> None:
        async def scenario():
            await scheduler.add_availability(DOCTOR_ID, 1, time(9, 0), time(12, 0))
            tuesday = at(9, day=MONDAY + timedelta(days=1))
            first = await book(scheduler, at(11), at(11, 30), reason="Blood pressure")
            second = await book(scheduler, tuesday, tuesday + timedelta(minutes=30), reason="Vaccination")
            await scheduler.cancel_appointment(first.id, "Moved abroad")
            return (
                first,
                second,
                await scheduler.list_patient_appointments(PATIENT_ID),
                await scheduler.list_patient_appointments(PATIENT_ID, MONDAY + timedelta(days=1)),
                await scheduler.next_appointment_for_patient(PATIENT_ID),
                await scheduler.next_appointment_for_patient(OTHER_PATIENT_ID),
            )

        first, second, all_of_them, from_tuesday, upcoming, nothing = asyncio.run(scenario())

        assert [a.id for a in all_of_them] == [first.id, second.id]
        assert [a.id for a in from_tuesday] == [second.id]
        assert upcoming.id == second.id
        assert nothing is None

    def test_search_filters(self, scheduler, monday_clinic) -> None:
        async def scenario():
            a = await book(scheduler, at(9), at(9, 30), reason="Annual Check-up")
            b = await book(scheduler, at(10), at(10, 30), reason="Knee pain", patient_id=OTHER_PATIENT_ID)
            await scheduler.confirm_appointment(b.id)
            return (
                a,
                b,
                await scheduler.search_appointments(AppointmentSearchCriteria(reason_pattern="CHECK")),
                await scheduler.search_appointments(AppointmentSearchCriteria(status=AppointmentStatus.CONFIRMED)),
                await scheduler.search_appointments(
                    AppointmentSearchCriteria(doctor_id=DOCTOR_ID, start_from=at(9, 30), start_to=at(12))
                ),
                await scheduler.search_appointments(AppointmentSearchCriteria(location="Room 4", confirmed=False)),
            )

        a, b, by_reason, by_status, by_range, by_location = asyncio.run(scenario())

        assert [x.id for x in by_reason] == [a.id]
        assert [x.id for x in by_status] == [b.id]
        assert [x.id for x in by_range] == [b.id]
        assert [x.id for x in by_location] == [a.id]

from collections.abc import Iterable, Iterator, Sequence
from datetime import date, datetime, time, timedelta

from clinic_scheduler.core.exceptions import InvalidDurationError
from clinic_scheduler.models.slot import TimeSlot
from clinic_scheduler.services.appointment_store import AppointmentStore
from clinic_scheduler.services.schedule_catalog import ScheduleCatalog


def carve_free_slots(
    windows: Iterable[tuple[datetime, datetime]],
    busy: Sequence[tuple[datetime, datetime]],
    slot_duration: timedelta,
) -> Iterator[TimeSlot]:
    """Yield fixed-length slots from each window's free gaps.

    ``windows`` must be ascending and disjoint, ``busy`` sorted by start.
    A trailing remainder shorter than ``slot_duration`` is dropped.
    """
    for window_start, window_end in windows:
        cursor = window_start
        for busy_start, busy_end in busy:
            if busy_end <= cursor:
                continue
            if busy_start >= window_end:
                break
            yield from _fill_gap(cursor, min(busy_start, window_end), slot_duration)
            cursor = max(cursor, busy_end)
            if cursor >= window_end:
                break
        yield from _fill_gap(cursor, window_end, slot_duration)


def _fill_gap(gap_start: datetime, gap_end: datetime, slot_duration: timedelta) -> Iterator[TimeSlot]:
    current = gap_start
    while current + slot_duration <= gap_end:
        yield TimeSlot(current, current + slot_duration)
        current += slot_duration


class FreeSlots:
    """Lazily computed free slots; every iteration starts over from the first slot."""

    def __init__(
        self,
        windows: list[tuple[datetime, datetime]],
        busy: list[tuple[datetime, datetime]],
        slot_duration: timedelta,
    ) -> None:
        self._windows = windows
        self._busy = busy
        self.slot_duration = slot_duration

    def __iter__(self) -> Iterator[TimeSlot]:
        return carve_free_slots(self._windows, self._busy, self.slot_duration)

    def __bool__(self) -> bool:
        return next(iter(self), None) is not None

    def __repr__(self) -> str:
        return f"FreeSlots({list(self)!r})"


def as_duration(slot_duration: timedelta | int) -> timedelta:
    """Accept a timedelta or a number of minutes."""
    if isinstance(slot_duration, timedelta):
        duration = slot_duration
    else:
        duration = timedelta(minutes=slot_duration)
    if duration <= timedelta(0):
        raise InvalidDurationError(f"Slot duration must be positive, got {duration}")
    return duration


class SlotCalculator:
    def __init__(self, catalog: ScheduleCatalog, store: AppointmentStore) -> None:
        self._catalog = catalog
        self._store = store

    async def free_slots(self, doctor_id: int, on_date: date, slot_duration: timedelta | int) -> FreeSlots:
        duration = as_duration(slot_duration)
        day_start = datetime.combine(on_date, time.min)
        day_end = day_start + timedelta(days=1)
        # One read session so windows and bookings come from the same snapshot
        async with self._store.reader() as session:
            windows = await self._catalog.windows_for(doctor_id, on_date.weekday(), session=session)
            booked = await self._store.find_active_by_doctor_and_range(session, doctor_id, day_start, day_end)
        return FreeSlots(
            windows=[
                (datetime.combine(on_date, w.start_time), datetime.combine(on_date, w.end_time))
                for w in windows
            ],
            busy=[(a.start_utc, a.end_utc) for a in booked],
            slot_duration=duration,
        )

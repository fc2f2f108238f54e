from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from clinic_scheduler.models.appointment import Appointment
from clinic_scheduler.services.appointment_store import AppointmentStore


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    """Half-open [s1, e1) and [s2, e2) overlap; touching endpoints do not."""
    return s1 < e2 and s2 < e1


class ConflictDetector:
    def __init__(self, store: AppointmentStore) -> None:
        self._store = store

    async def find_conflicts(
        self,
        doctor_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> list[Appointment]:
        async with self._store.reader(session) as s:
            candidates = await self._store.find_active_by_doctor_and_range(s, doctor_id, start, end)
        return [
            a
            for a in candidates
            if a.id != exclude_appointment_id
            and a.is_active
            and intervals_overlap(start, end, a.start_utc, a.end_utc)
        ]

    async def has_overlap(
        self,
        doctor_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: int | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> bool:
        conflicts = await self.find_conflicts(
            doctor_id, start, end, exclude_appointment_id, session=session
        )
        return bool(conflicts)

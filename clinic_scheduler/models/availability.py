from datetime import time

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class DoctorAvailabilityWindow(SQLModel, table=True):
    """Recurring weekly [start_time, end_time) during which a doctor books appointments.

    ``weekday`` and the times are UTC, matching the appointment timestamps they are
    compared with. A clinic whose local hours cross midnight UTC splits them into
    two windows on consecutive weekdays.
    """

    __tablename__ = "doctor_availability_windows"
    __table_args__ = (Index("ix_availability_doctor_weekday", "doctor_id", "weekday"),)

    id: int | None = Field(default=None, primary_key=True)
    doctor_id: int = Field(index=True)
    weekday: int  # 0 = Monday ... 6 = Sunday, as date.weekday()
    start_time: time
    end_time: time
    slot_duration_minutes: int | None = None
    location: str | None = Field(default=None, max_length=50)

    def contains(self, start: time, end: time) -> bool:
        return self.start_time <= start and end <= self.end_time


class AvailabilityWindowCreate(SQLModel):
    weekday: int
    start_time: time
    end_time: time
    slot_duration_minutes: int | None = None
    location: str | None = None


class AvailabilityWindowPublic(SQLModel):
    id: int
    doctor_id: int
    weekday: int
    start_time: time
    end_time: time
    slot_duration_minutes: int | None = None
    location: str | None = None

import enum
from datetime import datetime

from sqlalchemy import DateTime, Index
from sqlmodel import Field, SQLModel

from clinic_scheduler.core.clock import utc_naive_now


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Still waiting for the visit to happen
OPEN_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})
TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELED, AppointmentStatus.NO_SHOW}
)
# Everything except CANCELED occupies the doctor's time
ACTIVE_STATUSES = frozenset(set(AppointmentStatus) - {AppointmentStatus.CANCELED})


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_doctor_start", "doctor_id", "start_utc"),
        Index("ix_appointments_status_start", "status", "start_utc"),
    )

    id: int | None = Field(default=None, primary_key=True)
    doctor_id: int
    patient_id: int = Field(index=True)
    # All timestamps are naive UTC in TIMESTAMP WITHOUT TIME ZONE columns
    start_utc: datetime = Field(sa_type=DateTime())
    end_utc: datetime = Field(sa_type=DateTime())
    status: AppointmentStatus = Field(default=AppointmentStatus.SCHEDULED)
    confirmed: bool = False
    confirmation_timestamp: datetime | None = Field(default=None, sa_type=DateTime())
    reason: str = Field(max_length=255)
    notes: str | None = Field(default=None, max_length=1000)
    location: str | None = Field(default=None, max_length=50)
    created_by: str = Field(max_length=100)
    created_at: datetime = Field(default_factory=utc_naive_now, sa_type=DateTime())
    updated_at: datetime = Field(default_factory=utc_naive_now, sa_type=DateTime())
    cancellation_reason: str | None = Field(default=None, max_length=255)
    canceled_at: datetime | None = Field(default=None, sa_type=DateTime())
    rescheduled_from_id: int | None = Field(default=None, foreign_key="appointments.id")

    @property
    def is_active(self) -> bool:
        return self.status != AppointmentStatus.CANCELED


class AppointmentCreate(SQLModel):
    doctor_id: int
    patient_id: int
    start_utc: datetime
    end_utc: datetime | None = None
    reason: str
    notes: str | None = None
    location: str | None = None
    created_by: str


class AppointmentPublic(SQLModel):
    id: int
    doctor_id: int
    patient_id: int
    start_utc: datetime
    end_utc: datetime
    status: AppointmentStatus
    confirmed: bool
    confirmation_timestamp: datetime | None = None
    reason: str
    notes: str | None = None
    location: str | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    cancellation_reason: str | None = None
    canceled_at: datetime | None = None
    rescheduled_from_id: int | None = None


class AppointmentSearchCriteria(SQLModel):
    doctor_id: int | None = None
    patient_id: int | None = None
    status: AppointmentStatus | None = None
    start_from: datetime | None = None
    start_to: datetime | None = None
    reason_pattern: str | None = None
    confirmed: bool | None = None
    location: str | None = None

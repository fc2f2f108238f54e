from datetime import date, datetime

from pydantic import BaseModel, Field


class SlotInfo(BaseModel):
    start_utc: datetime
    end_utc: datetime


class FreeSlotsResponse(BaseModel):
    doctor_id: int
    date: date
    duration_minutes: int
    slots: list[SlotInfo]


class CancelAppointmentRequest(BaseModel):
    reason: str


class CompleteAppointmentRequest(BaseModel):
    notes: str | None = None


class RescheduleAppointmentRequest(BaseModel):
    new_start_utc: datetime
    new_end_utc: datetime | None = None


class NoShowSweepRequest(BaseModel):
    now: datetime | None = None  # defaults to the server clock
    grace_minutes: int | None = Field(default=None, ge=0)


class NoShowSweepResponse(BaseModel):
    transitioned: int

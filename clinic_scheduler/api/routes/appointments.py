from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, status

from clinic_scheduler.api.deps import get_scheduler
from clinic_scheduler.api.schemas.appointment import (
    CancelAppointmentRequest,
    CompleteAppointmentRequest,
    RescheduleAppointmentRequest,
)
from clinic_scheduler.models.appointment import (
    AppointmentCreate,
    AppointmentPublic,
    AppointmentSearchCriteria,
    AppointmentStatus,
)
from clinic_scheduler.services.scheduling_service import SchedulingService

router = APIRouter(tags=["appointments"])


@router.post("/appointments", response_model=AppointmentPublic, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    body: AppointmentCreate,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.create_appointment(
        body.doctor_id,
        body.patient_id,
        body.start_utc,
        body.end_utc,
        reason=body.reason,
        created_by=body.created_by,
        notes=body.notes,
        location=body.location,
    )


@router.get("/appointments", response_model=list[AppointmentPublic])
async def search_appointments(
    doctor_id: int | None = None,
    patient_id: int | None = None,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    reason: str | None = Query(None, description="Case-insensitive substring of the reason"),
    confirmed: bool | None = None,
    location: str | None = None,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    criteria = AppointmentSearchCriteria(
        doctor_id=doctor_id,
        patient_id=patient_id,
        status=status_filter,
        start_from=start_from,
        start_to=start_to,
        reason_pattern=reason,
        confirmed=confirmed,
        location=location,
    )
    return await scheduler.search_appointments(criteria)


@router.get("/appointments/{appointment_id}", response_model=AppointmentPublic)
async def get_appointment(appointment_id: int, scheduler: SchedulingService = Depends(get_scheduler)):
    return await scheduler.get_appointment(appointment_id)


@router.post("/appointments/{appointment_id}/confirm", response_model=AppointmentPublic)
async def confirm_appointment(appointment_id: int, scheduler: SchedulingService = Depends(get_scheduler)):
    return await scheduler.confirm_appointment(appointment_id)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentPublic)
async def cancel_appointment(
    appointment_id: int,
    body: CancelAppointmentRequest,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.cancel_appointment(appointment_id, body.reason)


@router.post("/appointments/{appointment_id}/complete", response_model=AppointmentPublic)
async def complete_appointment(
    appointment_id: int,
    body: CompleteAppointmentRequest | None = None,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.complete_appointment(appointment_id, body.notes if body else None)


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentPublic)
async def reschedule_appointment(
    appointment_id: int,
    body: RescheduleAppointmentRequest,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    """Returns the new appointment; the original is canceled and linked via rescheduled_from_id."""
    return await scheduler.reschedule_appointment(appointment_id, body.new_start_utc, body.new_end_utc)


@router.get("/patients/{patient_id}/appointments", response_model=list[AppointmentPublic])
async def list_patient_appointments(
    patient_id: int,
    from_date: date | None = None,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.list_patient_appointments(patient_id, from_date)


@router.get("/patients/{patient_id}/next-appointment", response_model=AppointmentPublic | None)
async def next_appointment(patient_id: int, scheduler: SchedulingService = Depends(get_scheduler)):
    return await scheduler.next_appointment_for_patient(patient_id)


@router.get("/doctors/{doctor_id}/appointments", response_model=list[AppointmentPublic])
async def list_doctor_appointments(
    doctor_id: int,
    date_param: date = Query(..., alias="date"),
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.list_doctor_appointments(doctor_id, date_param)

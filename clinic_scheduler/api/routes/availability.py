from fastapi import APIRouter, Depends, status

from clinic_scheduler.api.deps import get_scheduler
from clinic_scheduler.models.availability import AvailabilityWindowCreate, AvailabilityWindowPublic
from clinic_scheduler.services.scheduling_service import SchedulingService

router = APIRouter(prefix="/doctors/{doctor_id}/availability", tags=["availability"])


@router.get("", response_model=list[AvailabilityWindowPublic])
async def list_windows(doctor_id: int, scheduler: SchedulingService = Depends(get_scheduler)):
    return await scheduler.list_availability(doctor_id)


@router.post("", response_model=AvailabilityWindowPublic, status_code=status.HTTP_201_CREATED)
async def add_window(
    doctor_id: int,
    body: AvailabilityWindowCreate,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.add_availability(
        doctor_id,
        body.weekday,
        body.start_time,
        body.end_time,
        slot_duration_minutes=body.slot_duration_minutes,
        location=body.location,
    )


@router.get("/{window_id}", response_model=AvailabilityWindowPublic)
async def get_window(
    doctor_id: int,
    window_id: int,
    scheduler: SchedulingService = Depends(get_scheduler),
):
    return await scheduler.get_availability(window_id, doctor_id=doctor_id)


@router.delete("/{window_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_window(
    doctor_id: int,
    window_id: int,
    scheduler: SchedulingService = Depends(get_scheduler),
) -> None:
    """Already booked appointments inside the window are kept."""
    await scheduler.remove_availability(window_id, doctor_id=doctor_id)

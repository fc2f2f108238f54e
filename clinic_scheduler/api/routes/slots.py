from datetime import date

from fastapi import APIRouter, Depends, Query

from clinic_scheduler.api.deps import get_scheduler
from clinic_scheduler.api.schemas.appointment import FreeSlotsResponse, SlotInfo
from clinic_scheduler.core.config import settings
from clinic_scheduler.services.scheduling_service import SchedulingService

router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("/free", response_model=FreeSlotsResponse)
async def free_slots(
    doctor_id: int,
    date_param: date = Query(..., alias="date"),
    duration_minutes: int = Query(default=settings.default_slot_duration_minutes),
    scheduler: SchedulingService = Depends(get_scheduler),
) -> FreeSlotsResponse:
    """Bookable slots (UTC) of exactly duration_minutes for the doctor on the given date."""
    slots = await scheduler.get_free_slots(doctor_id, date_param, duration_minutes)
    return FreeSlotsResponse(
        doctor_id=doctor_id,
        date=date_param,
        duration_minutes=duration_minutes,
        slots=[SlotInfo(start_utc=s.start, end_utc=s.end) for s in slots],
    )

import logging

from fastapi import APIRouter, Depends

from clinic_scheduler.api.deps import get_scheduler
from clinic_scheduler.api.schemas.appointment import NoShowSweepRequest, NoShowSweepResponse
from clinic_scheduler.services.scheduling_service import SchedulingService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/no-show-sweep", response_model=NoShowSweepResponse)
async def run_no_show_sweep(
    body: NoShowSweepRequest | None = None,
    scheduler: SchedulingService = Depends(get_scheduler),
) -> NoShowSweepResponse:
    body = body or NoShowSweepRequest()
    n = await scheduler.run_no_show_sweep(body.now, body.grace_minutes)
    logger.info("On-demand no-show sweep transitioned %d appointment(s)", n)
    return NoShowSweepResponse(transitioned=n)

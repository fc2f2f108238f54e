from clinic_scheduler.core.config import settings
from clinic_scheduler.core.db import async_session_maker
from clinic_scheduler.services.scheduling_service import SchedulingService, build_scheduling_service

# One service per process so booking locks and the event queue are shared by all requests
scheduler = build_scheduling_service(async_session_maker, settings)


def get_scheduler() -> SchedulingService:
    return scheduler

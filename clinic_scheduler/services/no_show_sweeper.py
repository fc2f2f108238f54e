import logging
from datetime import datetime, timedelta

from clinic_scheduler.core.clock import to_naive_utc
from clinic_scheduler.core.exceptions import ValidationError
from clinic_scheduler.services.appointment_service import AppointmentLifecycle
from clinic_scheduler.services.appointment_store import AppointmentStore

logger = logging.getLogger(__name__)


class NoShowSweeper:
    """Marks open appointments whose start is past the grace period as NO_SHOW.

    Each candidate is updated on its own, conditioned on the status it was read
    with, so a confirm or cancel racing the sweep wins and the record is skipped.
    Running the sweep twice with the same inputs changes nothing the second time.
    """

    def __init__(self, store: AppointmentStore, lifecycle: AppointmentLifecycle) -> None:
        self._store = store
        self._lifecycle = lifecycle

    async def sweep(self, now: datetime, grace_minutes: int) -> int:
        if grace_minutes < 0:
            raise ValidationError(f"Grace period must not be negative, got {grace_minutes}")
        now = to_naive_utc(now)
        cutoff = now - timedelta(minutes=grace_minutes)

        async with self._store.reader() as session:
            due = [(a.id, a.status) for a in await self._store.find_due_for_no_show(session, cutoff)]
        if not due:
            return 0

        marked = 0
        for appointment_id, status in due:
            try:
                if await self._lifecycle.mark_no_show(appointment_id, status, cutoff=cutoff, now=now):
                    marked += 1
                else:
                    logger.debug("Appointment %s changed before no-show update, skipped", appointment_id)
            except Exception:
                logger.exception("Failed to mark appointment %s as no-show", appointment_id)
        logger.info("No-show sweep at %s: %d of %d candidates marked", now.isoformat(), marked, len(due))
        return marked

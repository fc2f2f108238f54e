"""Status-change events for notification and statistics consumers.

Publishing is fire-and-forget: it never blocks the transition that produced
the event and never raises into it.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from clinic_scheduler.models.appointment import Appointment, AppointmentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppointmentEvent:
    appointment_id: int
    doctor_id: int
    patient_id: int
    previous_status: AppointmentStatus | None
    status: AppointmentStatus
    occurred_at: datetime

    @classmethod
    def for_transition(
        cls,
        appointment: Appointment,
        previous_status: AppointmentStatus | None,
        occurred_at: datetime,
    ) -> "AppointmentEvent":
        return cls(
            appointment_id=appointment.id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            previous_status=previous_status,
            status=appointment.status,
            occurred_at=occurred_at,
        )


EventHandler = Callable[[AppointmentEvent], Awaitable[None] | None]


class AppointmentEventBus:
    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[AppointmentEvent] = asyncio.Queue(maxsize=maxsize)
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def publish(self, event: AppointmentEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "Event queue full, dropping %s -> %s for appointment %s",
                event.previous_status, event.status, event.appointment_id,
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def dispatch_pending(self) -> int:
        """Deliver everything queued right now; returns the number of events handled."""
        delivered = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            await self._deliver(event)
            self._queue.task_done()
            delivered += 1
        return delivered

    async def run(self) -> None:
        """Dispatcher loop; run as a background task and cancel on shutdown."""
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: AppointmentEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event handler %r failed for appointment %s", handler, event.appointment_id
                )


def log_status_change(event: AppointmentEvent) -> None:
    logger.info(
        "Appointment %s (doctor=%s patient=%s): %s -> %s at %s",
        event.appointment_id,
        event.doctor_id,
        event.patient_id,
        event.previous_status.value if event.previous_status else "NEW",
        event.status.value,
        event.occurred_at.isoformat(),
    )

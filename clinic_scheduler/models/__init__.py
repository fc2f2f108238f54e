from clinic_scheduler.models.appointment import (
    ACTIVE_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    Appointment,
    AppointmentCreate,
    AppointmentPublic,
    AppointmentSearchCriteria,
    AppointmentStatus,
)
from clinic_scheduler.models.availability import (
    AvailabilityWindowCreate,
    AvailabilityWindowPublic,
    DoctorAvailabilityWindow,
)
from clinic_scheduler.models.slot import TimeSlot

__all__ = [
    "ACTIVE_STATUSES",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "Appointment",
    "AppointmentCreate",
    "AppointmentPublic",
    "AppointmentSearchCriteria",
    "AppointmentStatus",
    "AvailabilityWindowCreate",
    "AvailabilityWindowPublic",
    "DoctorAvailabilityWindow",
    "TimeSlot",
]

import enum

from clinic_scheduler.core.exceptions import InvalidTransitionError
from clinic_scheduler.models.appointment import AppointmentStatus


class LifecycleOperation(str, enum.Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    COMPLETE = "complete"
    RESCHEDULE = "reschedule"
    MARK_NO_SHOW = "mark_no_show"


S = AppointmentStatus
Op = LifecycleOperation

# (current status, operation) -> resulting status. For RESCHEDULE the result is
# the status of the replacement record; the original becomes CANCELED.
TRANSITIONS: dict[tuple[AppointmentStatus, LifecycleOperation], AppointmentStatus] = {
    (S.SCHEDULED, Op.CONFIRM): S.CONFIRMED,
    (S.SCHEDULED, Op.CANCEL): S.CANCELED,
    (S.CONFIRMED, Op.CANCEL): S.CANCELED,
    (S.SCHEDULED, Op.COMPLETE): S.COMPLETED,
    (S.CONFIRMED, Op.COMPLETE): S.COMPLETED,
    (S.SCHEDULED, Op.RESCHEDULE): S.SCHEDULED,
    (S.CONFIRMED, Op.RESCHEDULE): S.SCHEDULED,
    (S.SCHEDULED, Op.MARK_NO_SHOW): S.NO_SHOW,
    (S.CONFIRMED, Op.MARK_NO_SHOW): S.NO_SHOW,
}


def is_allowed(current: AppointmentStatus, operation: LifecycleOperation) -> bool:
    return (current, operation) in TRANSITIONS


def next_status(current: AppointmentStatus, operation: LifecycleOperation) -> AppointmentStatus:
    try:
        return TRANSITIONS[(current, operation)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot {operation.value.replace('_', ' ')} an appointment in status {current.value}"
        ) from None

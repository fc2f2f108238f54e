"""Business errors raised by the scheduling core.

All of these are caller-facing and never retried by the core. Each carries
the HTTP status the API layer answers with.
"""


class SchedulingError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed interval, missing reason, or a field out of bounds."""

    status_code = 422


class InvalidRangeError(ValidationError):
    """An availability window whose start is not before its end."""


class InvalidDurationError(ValidationError):
    """Non-positive slot duration."""


class OutOfScheduleError(SchedulingError):
    """Interval not inside any availability window of the doctor."""

    status_code = 409


class ConflictError(SchedulingError):
    """Interval overlaps an active appointment (including lost booking races)."""

    status_code = 409


class OverlappingWindowError(SchedulingError):
    status_code = 409


class InvalidTransitionError(SchedulingError):
    status_code = 409


class ConcurrentModificationError(SchedulingError):
    """The record changed between read and conditional write."""

    status_code = 409


class NotFoundError(SchedulingError):
    status_code = 404


class InfrastructureError(Exception):
    """Persistence kept failing transiently after the bounded retries."""

    status_code = 503

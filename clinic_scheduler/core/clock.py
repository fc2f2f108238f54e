from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_naive_now() -> datetime:
    """Naive UTC for comparison with TIMESTAMP WITHOUT TIME ZONE."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert to naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt

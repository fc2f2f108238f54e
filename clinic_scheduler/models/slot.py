from datetime import datetime, timedelta
from typing import NamedTuple


class TimeSlot(NamedTuple):
    """Half-open [start, end) bookable interval."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

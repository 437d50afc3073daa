from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from common.civil_time import CivilClock


def next_boundary(now: datetime, interval_minutes: int, clock: CivilClock) -> datetime:
    """
    Next interval-aligned instant strictly after the minute containing `now`.

    Alignment is in civil time: with 15 minutes the boundaries are :00/:15/:30/:45
    of the local clock. Seconds are ignored, and an instant exactly on a boundary
    maps to the following one (14:15 -> 14:30), so re-applying the function to
    its own result always moves forward. Intervals that do not divide 60 restart
    at the top of every hour (25 -> :00, :25, :50, next :00).
    """
    if not 1 <= int(interval_minutes) <= 60:
        raise ValueError(f"interval_minutes must be within 1..60, got {interval_minutes}")
    local = clock.localize(now)
    now = local.astimezone(timezone.utc)
    nxt = (local.minute // interval_minutes + 1) * interval_minutes
    hour_start = datetime(local.year, local.month, local.day, local.hour)
    if nxt >= 60:
        civil = hour_start + timedelta(hours=1)
    else:
        civil = hour_start + timedelta(minutes=nxt)
    key = (civil.strftime("%Y-%m-%d"), civil.strftime("%H-%M"))
    boundary = clock.to_instant(*key)
    if boundary <= now:
        # second pass through a repeated hour: the later occurrence is the one ahead of us
        boundary = clock.to_instant(*key, fold=1)
    return boundary


def time_remaining(now: datetime, boundary: datetime) -> timedelta:
    return max(timedelta(0), boundary - now)


def time_remaining_label(now: datetime, boundary: datetime) -> str:
    if boundary <= now:
        return "overdue"
    remaining = boundary - now
    minutes = int(remaining.total_seconds() // 60)
    if minutes < 1:
        return "in less than a minute"
    if minutes == 1:
        return "in 1 minute"
    return f"in {minutes} minutes"


@dataclass(frozen=True)
class IntervalScheduler:
    """Boundary arithmetic bound to one clock and interval."""

    clock: CivilClock
    interval_minutes: int = 15

    def next_boundary(self, now: Optional[datetime] = None) -> datetime:
        return next_boundary(now or datetime.now(timezone.utc), self.interval_minutes, self.clock)

    def seconds_until_next(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return time_remaining(now, self.next_boundary(now)).total_seconds()

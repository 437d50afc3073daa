"""
Civil (wall-clock) time in one named zone <-> absolute UTC instants.

Storage keys are civil: a date folder "YYYY-MM-DD" and a time slot "HH-MM",
both in the configured zone. Offsets come from the IANA database through
zoneinfo, resolved for the calendar date being converted (not for "now").

DST policy (fold=0 everywhere):
  - repeated hour (autumn): the first occurrence, i.e. the daylight offset
  - skipped hour (spring):  the pre-transition offset, so 02:30 resolves to
    the instant the clock shows as 03:30; such keys do not round-trip.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from common.errors import ConfigError, ValidationError

DATE_FOLDER_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_SLOT_RE = re.compile(r"^\d{2}-\d{2}$")
QUERY_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

DATE_EXAMPLE = "2025-09-28"
TIME_EXAMPLE = "22:45"


def parse_date_folder(value: str) -> date:
    """Strict YYYY-MM-DD that is also a real calendar date."""
    if not isinstance(value, str) or not DATE_FOLDER_RE.match(value):
        raise ValidationError(f"Invalid date '{value}': expected YYYY-MM-DD", example=DATE_EXAMPLE)
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date '{value}': not a calendar date", example=DATE_EXAMPLE) from None


def normalize_time_slot(value: str) -> str:
    """
    Accept "H:MM", "HH:MM" (query form) or "HH-MM" (storage form);
    return the zero-padded storage form "HH-MM".
    """
    if not isinstance(value, str):
        raise ValidationError(f"Invalid time '{value}': expected HH:MM", example=TIME_EXAMPLE)
    m = QUERY_TIME_RE.match(value.strip()) or re.match(r"^(\d{2})-(\d{2})$", value.strip())
    if not m:
        raise ValidationError(f"Invalid time '{value}': expected H:MM or HH:MM", example=TIME_EXAMPLE)
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"Invalid time '{value}': out of range", example=TIME_EXAMPLE)
    return f"{hour:02d}-{minute:02d}"


def slot_label(time_slot: str) -> str:
    """'22-45' -> '22:45'"""
    return time_slot.replace("-", ":")


def to_epoch_ms(instant: datetime) -> int:
    return int(instant.timestamp() * 1000)


def format_duration_ms(age_ms: int) -> str:
    """Compact age label: '2h 5m', '4m 10s', '12s'."""
    seconds = max(0, int(age_ms)) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@dataclass(frozen=True)
class CivilClock:
    """Converter bound to one IANA zone name (e.g. 'America/New_York')."""

    tz_name: str = "America/New_York"

    def __post_init__(self) -> None:
        try:
            ZoneInfo(self.tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone '{self.tz_name}'") from e

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.tz_name)

    # -------- civil -> instant --------

    def civil_datetime(self, date_folder: str, time_slot: str, fold: int = 0) -> datetime:
        """Aware local datetime for a storage key."""
        d = parse_date_folder(date_folder)
        hh, mm = normalize_time_slot(time_slot).split("-")
        return datetime(d.year, d.month, d.day, int(hh), int(mm), tzinfo=self.tz, fold=fold)

    def to_instant(self, date_folder: str, time_slot: str, fold: int = 0) -> datetime:
        return self.civil_datetime(date_folder, time_slot, fold).astimezone(timezone.utc)

    # -------- instant -> civil --------

    def to_civil(self, instant: datetime) -> Tuple[str, str]:
        local = self.localize(instant)
        return local.strftime("%Y-%m-%d"), local.strftime("%H-%M")

    def localize(self, instant: datetime) -> datetime:
        if instant.tzinfo is None:
            # Naive instants are UTC throughout this code base
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)

    def now_civil(self, now: Optional[datetime] = None) -> Tuple[str, str]:
        return self.to_civil(now or datetime.now(timezone.utc))

    # -------- diagnostics / formatting --------

    def offset_minutes(self, date_folder: str) -> int:
        """UTC offset in minutes at local midnight of the given date."""
        midnight = self.civil_datetime(date_folder, "00-00")
        off = midnight.utcoffset() or timedelta(0)
        return int(off.total_seconds() // 60)

    def is_ambiguous_or_missing(self, date_folder: str, time_slot: str) -> bool:
        """True for wall times in a DST overlap (repeated) or gap (skipped)."""
        first = self.civil_datetime(date_folder, time_slot)
        second = first.replace(fold=1)
        return first.utcoffset() != second.utcoffset()

    def format_instant(self, instant: datetime) -> str:
        """'September 28, 2025 at 10:45:00 PM' in the configured zone."""
        local = self.localize(instant)
        hour12 = local.hour % 12 or 12
        ampm = "AM" if local.hour < 12 else "PM"
        return (
            f"{local.strftime('%B')} {local.day}, {local.year} at "
            f"{hour12}:{local.minute:02d}:{local.second:02d} {ampm}"
        )

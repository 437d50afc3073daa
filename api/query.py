from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from common.civil_time import (
    DATE_EXAMPLE,
    QUERY_TIME_RE,
    TIME_EXAMPLE,
    CivilClock,
    format_duration_ms,
    normalize_time_slot,
    parse_date_folder,
    to_epoch_ms,
)
from common.config import SourceConfig
from common.errors import SnapshotNotFound, ValidationError
from common.types import ColorSnapshot
from cache.scheduler import IntervalScheduler, time_remaining_label
from cache.snapshot_store import SnapshotStore


class QueryResolver:
    """
    Maps /api parameters onto store reads and shapes the JSON payloads.

      no params    -> latest ("current": cache age + next update)
      date + time  -> exact snapshot ("historical")
      date only    -> every snapshot of that date, ascending
      time only    -> ValidationError
    """

    def __init__(
        self,
        store: SnapshotStore,
        scheduler: IntervalScheduler,
        *,
        source: Optional[SourceConfig] = None,
        image_urls: Optional[Callable[[], Dict[str, str]]] = None,
        recent_days: int = 30,
        now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.scheduler = scheduler
        self.clock: CivilClock = scheduler.clock
        self.source = source
        self.image_urls = image_urls
        self.recent_days = recent_days
        self._now = now_fn

    def resolve(self, date: Optional[str] = None, time: Optional[str] = None) -> Dict[str, Any]:
        date = date or None
        time = time or None
        if time is not None and date is None:
            raise ValidationError(
                "A time requires a date; pass both date and time, or a date alone",
                example=f"/api?date={DATE_EXAMPLE}&time={TIME_EXAMPLE}",
            )
        if date is not None:
            parse_date_folder(date)
        if time is not None:
            if not QUERY_TIME_RE.match(time.strip()):
                raise ValidationError(f"Invalid time '{time}': expected H:MM or HH:MM", example=TIME_EXAMPLE)
            normalize_time_slot(time)

        if date is None:
            return self.latest()
        if time is None:
            return self.for_date(date)
        return self.exact(date, time)

    # -------- variants --------

    def latest(self) -> Dict[str, Any]:
        snap = self.store.read_latest()
        if snap is None:
            raise SnapshotNotFound("No data yet: the cache has not been populated", reason="no_data")
        now = self._now()
        age_ms = max(0, to_epoch_ms(now) - to_epoch_ms(snap.timestamp))
        nxt = self.scheduler.next_boundary(now)

        metadata = self._base_metadata(snap, historical=False)
        metadata["cacheAge"] = {"timestamp": age_ms, "formatted": format_duration_ms(age_ms)}
        metadata["nextUpdate"] = {
            "timestamp": to_epoch_ms(nxt),
            "formatted": self.clock.format_instant(nxt),
            "timeRemaining": time_remaining_label(now, nxt),
        }
        if self.source is not None:
            metadata["source"] = self.source.to_public()
        metadata["cacheConfig"] = {
            "intervalMinutes": self.scheduler.interval_minutes,
            "recentDays": self.recent_days,
        }

        payload: Dict[str, Any] = {"colors": dict(snap.colors), "metadata": metadata}
        images = self.image_urls() if self.image_urls else None
        if images:
            payload["images"] = images
        return payload

    def exact(self, date: str, time: str) -> Dict[str, Any]:
        snap = self.store.read_exact(date, time)
        if snap is None:
            raise SnapshotNotFound(f"No snapshot for {date} at {time}", reason="no_snapshot")
        metadata = self._base_metadata(snap, historical=True)
        metadata["requested"] = {"date": date, "time": time}
        return {"colors": dict(snap.colors), "metadata": metadata}

    def for_date(self, date: str) -> Dict[str, Any]:
        snaps = self.store.read_all_for_date(date)
        return {
            "date": date,
            "count": len(snaps),
            "snapshots": [self._entry(s) for s in snaps],
        }

    def recent(self, max_days: Optional[int] = None) -> Dict[str, Any]:
        snaps = self.store.read_recent(self.recent_days if max_days is None else max_days)
        return {"count": len(snaps), "snapshots": [self._entry(s) for s in snaps]}

    def available_dates(self) -> Dict[str, Any]:
        summaries = self.store.list_dates()
        return {
            "dates": [s.to_dict() for s in summaries],
            "latest": summaries[0].date if summaries else None,
            "oldest": summaries[-1].date if summaries else None,
            "count": len(summaries),
        }

    # -------- formatting --------

    def _base_metadata(self, snap: ColorSnapshot, *, historical: bool) -> Dict[str, Any]:
        return {
            "isHistoricalData": historical,
            "lastUpdated": {
                "timestamp": to_epoch_ms(snap.timestamp),
                "formatted": self.clock.format_instant(snap.timestamp),
            },
        }

    def _entry(self, snap: ColorSnapshot) -> Dict[str, Any]:
        d = snap.to_dict()
        d["formatted"] = self.clock.format_instant(snap.timestamp)
        return d

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from common.civil_time import (
    DATE_FOLDER_RE,
    CivilClock,
    normalize_time_slot,
    parse_date_folder,
    slot_label,
)
from common.errors import SnapshotNotFound, StoreIOError
from common.logging_setup import get_logger
from common.types import HEX_COLOR_RE, ColorSnapshot, DateSummary

log = get_logger("cache.snapshot_store")

SLOT_FILE_RE = re.compile(r"^(\d{2}-\d{2})\.json$")


class SnapshotStore:
    """
    File-backed snapshot archive keyed by civil (date, time slot).

        root/
          └─ {YYYY-MM-DD}/
              └─ {HH-MM}.json   ({"<region>": "#rrggbb", ...})

    Both key components are fixed-width and zero-padded, so sorting the names
    lexicographically sorts them chronologically. Only names matching the two
    patterns are ever read or written; anything else in the tree is ignored.
    """

    def __init__(self, root: str | Path = "data", clock: Optional[CivilClock] = None):
        self.root = Path(root)
        self.clock = clock or CivilClock()

    # -------- writes --------

    def write_snapshot(self, date_folder: str, time_slot: str, colors: Dict[str, str]) -> ColorSnapshot:
        """
        Persist `colors` under (date_folder, time_slot), replacing any previous file.
        The JSON is written to a temp file in the same directory and renamed over the
        target, so readers see either the old file or the new one, never a torn one.
        """
        parse_date_folder(date_folder)
        slot = normalize_time_slot(time_slot)
        for label, hexcolor in colors.items():
            if not HEX_COLOR_RE.match(str(hexcolor)):
                raise ValueError(f"Color for '{label}' is not #rrggbb: {hexcolor!r}")

        day_dir = self.root / date_folder
        target = day_dir / f"{slot}.json"
        tmp_name = None
        try:
            day_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{slot}.", suffix=".tmp", dir=day_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(dict(colors), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except OSError as e:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise StoreIOError(f"Cannot write snapshot {target}: {e}", path=str(target)) from e

        log.info("Snapshot written", extra={"extra": {"date": date_folder, "slot": slot, "regions": len(colors)}})
        return ColorSnapshot(
            date_folder=date_folder,
            time_slot=slot,
            colors=dict(colors),
            timestamp=self.clock.to_instant(date_folder, slot),
        )

    # -------- reads --------

    def read_latest(self) -> Optional[ColorSnapshot]:
        """Newest snapshot across all dates, or None when the store is empty."""
        for date_folder in self._date_folders(descending=True):
            slots = self._time_slots(date_folder, descending=True)
            if slots:
                return self._load(date_folder, slots[0])
        return None

    def read_exact(self, date_folder: str, time: str) -> Optional[ColorSnapshot]:
        """Snapshot at exactly (date, time); time may be 'H:MM', 'HH:MM' or 'HH-MM'."""
        parse_date_folder(date_folder)
        slot = normalize_time_slot(time)
        if not (self.root / date_folder / f"{slot}.json").is_file():
            return None
        return self._load(date_folder, slot)

    def read_all_for_date(self, date_folder: str) -> List[ColorSnapshot]:
        """
        All snapshots of one civil date, ascending by time of day.
        Raises SnapshotNotFound(reason="unknown_date") when the date directory is
        absent and SnapshotNotFound(reason="empty_date") when it holds no snapshots.
        """
        parse_date_folder(date_folder)
        if not (self.root / date_folder).is_dir():
            raise SnapshotNotFound(f"No data recorded for {date_folder}", reason="unknown_date")
        slots = self._time_slots(date_folder)
        if not slots:
            raise SnapshotNotFound(f"No snapshots yet for {date_folder}", reason="empty_date")
        return [self._load(date_folder, s) for s in slots]

    def read_recent(self, max_days: int = 30) -> List[ColorSnapshot]:
        """
        Snapshots from the `max_days` most recent date directories, newest first.
        Per-date lists are ascending, so the flattened list is re-sorted by instant.
        """
        if max_days <= 0:
            return []
        out: List[ColorSnapshot] = []
        for date_folder in self._date_folders(descending=True)[:max_days]:
            out.extend(self._load(date_folder, s) for s in self._time_slots(date_folder))
        out.sort(key=lambda s: s.timestamp, reverse=True)
        return out

    def list_dates(self) -> List[DateSummary]:
        """Per-date counts with first/last 'HH:MM', newest date first."""
        summaries: List[DateSummary] = []
        for date_folder in self._date_folders(descending=True):
            labels = [slot_label(s) for s in self._time_slots(date_folder)]
            summaries.append(
                DateSummary(
                    date=date_folder,
                    count=len(labels),
                    first_time=min(labels) if labels else None,
                    last_time=max(labels) if labels else None,
                )
            )
        return summaries

    def stats(self) -> Dict[str, int]:
        dates = self._date_folders()
        return {
            "dates": len(dates),
            "snapshots": sum(len(self._time_slots(d)) for d in dates),
        }

    # -------- internals --------

    def _date_folders(self, *, descending: bool = False) -> List[str]:
        if not self.root.is_dir():
            return []
        try:
            names = [p.name for p in self.root.iterdir() if p.is_dir() and DATE_FOLDER_RE.match(p.name)]
        except OSError as e:
            raise StoreIOError(f"Cannot list {self.root}: {e}", path=str(self.root)) from e
        return sorted(names, reverse=descending)

    def _time_slots(self, date_folder: str, *, descending: bool = False) -> List[str]:
        day_dir = self.root / date_folder
        if not day_dir.is_dir():
            return []
        slots: List[str] = []
        try:
            for p in day_dir.iterdir():
                m = SLOT_FILE_RE.match(p.name)
                if m and p.is_file():
                    slots.append(m.group(1))
        except OSError as e:
            raise StoreIOError(f"Cannot list {day_dir}: {e}", path=str(day_dir)) from e
        return sorted(slots, reverse=descending)

    def _load(self, date_folder: str, time_slot: str) -> ColorSnapshot:
        path = self.root / date_folder / f"{time_slot}.json"
        try:
            colors = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreIOError(f"Cannot read snapshot {path}: {e}", path=str(path)) from e
        if not isinstance(colors, dict):
            raise StoreIOError(f"Snapshot {path} is not a JSON object", path=str(path))
        return ColorSnapshot(
            date_folder=date_folder,
            time_slot=time_slot,
            colors={str(k): str(v) for k, v in colors.items()},
            timestamp=self.clock.to_instant(date_folder, time_slot),
        )

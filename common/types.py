from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Any, Dict
from datetime import datetime, timezone
import re

import numpy as np


IsoTime = str

HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def now_iso() -> IsoTime:
    """UTC timestamp in RFC3339/ISO-8601 with 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class ImageFrame:
    """
    A single frame grabbed from the video feed.

    Attributes:
        ts: ISO-8601 (UTC) timestamp string.
        width, height: image dimensions in pixels.
        frame: np.ndarray of shape (H,W) or (H,W,3), dtype uint8, BGR order.
        camera_id: logical ID for the source feed.
    """
    ts: IsoTime
    width: int
    height: int
    frame: np.ndarray
    camera_id: str = "feed0"

    def __post_init__(self) -> None:
        if not isinstance(self.frame, np.ndarray):
            raise TypeError("frame must be a numpy ndarray")
        if self.frame.ndim not in (2, 3):
            raise ValueError("frame must be 2D (gray) or 3D (BGR)")
        if self.frame.shape[0] != self.height or self.frame.shape[1] != self.width:
            raise ValueError("width/height do not match frame shape")
        if self.frame.dtype != np.uint8:
            self.frame = self.frame.astype(np.uint8, copy=False)

    @property
    def shape(self) -> Tuple[int, int, int | None]:
        if self.frame.ndim == 2:
            return (self.height, self.width, None)
        return (self.height, self.width, self.frame.shape[2])

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {
            "ts": self.ts,
            "width": self.width,
            "height": self.height,
            "channels": None if self.frame.ndim == 2 else self.frame.shape[2],
            "camera_id": self.camera_id,
        }


@dataclass(frozen=True)
class ColorSnapshot:
    """
    One persisted set of region colors.

    Attributes:
        date_folder: civil date key, "YYYY-MM-DD".
        time_slot: civil time key, "HH-MM".
        colors: region label -> "#rrggbb".
        timestamp: UTC instant derived from (date_folder, time_slot); never stored in the file.
    """
    date_folder: str
    time_slot: str
    colors: Dict[str, str]
    timestamp: datetime

    @property
    def time_label(self) -> str:
        return self.time_slot.replace("-", ":")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.date_folder, self.time_slot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date_folder,
            "time": self.time_label,
            "colors": dict(self.colors),
            "timestamp": int(self.timestamp.timestamp() * 1000),
        }


@dataclass(slots=True)
class DateSummary:
    """Per-date directory summary for the available-dates listing."""
    date: str
    count: int
    first_time: Optional[str] = None
    last_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "count": self.count,
            "firstTime": self.first_time,
            "lastTime": self.last_time,
        }


@dataclass
class RunRecord:
    """Outcome of the last coordinator run (for /health)."""
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ok: bool = True
    message: str = ""
    key: Optional[Tuple[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at.isoformat(timespec="seconds"),
            "ok": self.ok,
            "message": self.message,
            "key": list(self.key) if self.key else None,
        }

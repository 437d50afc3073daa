"""Exception hierarchy shared by the cache, capture and api packages."""

from __future__ import annotations

from typing import Optional


class SkyCacheError(Exception):
    """Base exception for all sky color cache errors."""


class ConfigError(SkyCacheError):
    """Invalid or missing configuration."""


class ValidationError(SkyCacheError):
    """Malformed date/time parameter or an unresolvable parameter combination."""

    def __init__(self, message: str, *, example: Optional[str] = None) -> None:
        self.example = example
        super().__init__(message)


class SnapshotNotFound(SkyCacheError):
    """
    No snapshot for the requested key.

    `reason` tells the caller which kind of miss it was:
      - "no_data":      the store holds no snapshot at all yet
      - "no_snapshot":  no file for the exact (date, time) requested
      - "unknown_date": the date directory does not exist
      - "empty_date":   the date directory exists but has no valid files
    """

    def __init__(self, message: str, *, reason: str = "no_snapshot") -> None:
        self.reason = reason
        super().__init__(message)


class ConcurrencyRejected(SkyCacheError):
    """An update was triggered while another one is still running."""


class PipelineError(SkyCacheError):
    """The imaging pipeline failed (subprocess exit, unreadable stream, bad crop)."""


class StoreIOError(SkyCacheError):
    """Filesystem or decode failure while reading/writing a snapshot."""

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)

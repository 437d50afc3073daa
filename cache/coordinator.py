from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import cv2

from common.civil_time import CivilClock
from common.errors import ConcurrencyRejected
from common.logging_setup import get_logger
from common.types import ColorSnapshot, RunRecord
from cache.snapshot_store import SnapshotStore
from capture.pipeline import ImagingPipeline, save_images

log = get_logger("cache.coordinator")


class UpdateCoordinator:
    """
    Single-flight refresh: pipeline -> civil key for "now" -> store.

    Idle/Running is a non-blocking lock. A trigger that finds it held is
    rejected, never queued. The lock is released on every exit path, so a
    failed run leaves the coordinator Idle and the store untouched. A run that
    hangs inside the pipeline keeps it Running until the process restarts.
    """

    def __init__(
        self,
        pipeline: ImagingPipeline,
        store: SnapshotStore,
        clock: Optional[CivilClock] = None,
        *,
        image_dir: Optional[Path] = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.pipeline = pipeline
        self.store = store
        self.clock = clock or store.clock
        self.image_dir = image_dir
        self._now = now_fn
        self._lock = threading.Lock()
        self.last_success: Optional[RunRecord] = None
        self.last_error: Optional[RunRecord] = None

    # -------- guard --------

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def try_begin(self) -> bool:
        """Idle -> Running. False when a run already holds the guard."""
        return self._lock.acquire(blocking=False)

    def end(self) -> None:
        """Running -> Idle."""
        self._lock.release()

    # -------- runs --------

    def trigger(self) -> ColorSnapshot:
        """
        Run one refresh synchronously.
        Raises ConcurrencyRejected while another run is in flight; any failure of the
        run (PipelineError, StoreIOError or otherwise) propagates after the guard is released.
        """
        if not self.try_begin():
            log.info("Update already in progress, skipping")
            raise ConcurrencyRejected("Cache update already in progress")
        try:
            return self._run()
        finally:
            self.end()

    def run_claimed(self) -> Optional[ColorSnapshot]:
        """
        Body for a run whose guard the caller already took with try_begin().
        Meant for background execution: failures are logged, not raised.
        """
        try:
            return self._run()
        except Exception:
            log.exception("Background cache update failed")
            return None
        finally:
            self.end()

    def _run(self) -> ColorSnapshot:
        log.info("Updating cache")
        try:
            result = self.pipeline.run()
            date_folder, time_slot = self.clock.to_civil(self._now())
            snap = self.store.write_snapshot(date_folder, time_slot, result.colors)
        except Exception as e:
            self.last_error = RunRecord(at=self._now(), ok=False, message=str(e))
            raise

        if self.image_dir is not None:
            try:
                save_images(result, self.image_dir)
            except (OSError, cv2.error) as e:
                # snapshot is already on disk
                log.warning("Saving images failed: %s", e)

        self.last_success = RunRecord(at=self._now(), ok=True, message="ok", key=snap.key)
        log.info("Cache update completed", extra={"extra": {"date": snap.date_folder, "slot": snap.time_slot}})
        return snap

    def status(self) -> dict:
        return {
            "running": self.running,
            "lastSuccess": self.last_success.to_dict() if self.last_success else None,
            "lastError": self.last_error.to_dict() if self.last_error else None,
        }

"""
Unit tests for the scheduled refresh loop
"""

import pytest
import asyncio
import os
import sys
from datetime import datetime, timezone
from unittest.mock import patch

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from api.server import _refresh_loop, _refresh_once
from cache.coordinator import UpdateCoordinator
from cache.snapshot_store import SnapshotStore
from capture.pipeline import ImagingPipeline
from common.civil_time import CivilClock
from common.config import Region, SourceConfig
from common.errors import ConcurrencyRejected, PipelineError, StoreIOError

NOW = datetime(2025, 9, 29, 2, 45, 12, tzinfo=timezone.utc)


class ImmediateScheduler:
    """Every boundary is due right away."""

    def __init__(self):
        self.calls = 0

    def seconds_until_next(self, now=None):
        self.calls += 1
        return 0


class ScriptedCoordinator:
    """trigger() raises the scripted errors in order, then succeeds."""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.calls = 0

    def trigger(self):
        self.calls += 1
        if self.outcomes:
            raise self.outcomes.pop(0)
        return None


async def _run_until(coordinator, scheduler, calls, run_first=False):
    task = asyncio.create_task(_refresh_loop(scheduler, coordinator, run_first))
    for _ in range(500):
        if coordinator.calls >= calls or task.done():
            break
        await asyncio.sleep(0.01)
    alive = not task.done()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    return alive


class TestRefreshOnce:
    """One scheduled trigger"""

    def test_success(self):
        """Test a successful trigger"""
        coord = ScriptedCoordinator()
        asyncio.run(_refresh_once(coord))
        assert coord.calls == 1

    @pytest.mark.parametrize(
        "error",
        [
            ConcurrencyRejected("busy"),
            PipelineError("stream offline"),
            StoreIOError("disk full", path="data/2025-09-28/22-45.json"),
            RuntimeError("boom"),
        ],
    )
    def test_failures_are_logged_not_raised(self, error, caplog):
        """Test every trigger failure is absorbed and logged"""
        coord = ScriptedCoordinator([error])
        asyncio.run(_refresh_once(coord))
        assert coord.calls == 1
        assert caplog.records


class TestRefreshLoop:
    """Boundary loop"""

    def test_triggers_at_each_boundary(self):
        """Test one trigger per boundary"""
        coord = ScriptedCoordinator()
        scheduler = ImmediateScheduler()
        assert asyncio.run(_run_until(coord, scheduler, 3))
        assert coord.calls >= 3
        assert scheduler.calls >= 3

    def test_run_first_triggers_before_waiting(self):
        """Test startup run happens before the first boundary wait"""
        coord = ScriptedCoordinator()
        scheduler = ImmediateScheduler()
        asyncio.run(_run_until(coord, scheduler, 1, run_first=True))
        assert coord.calls >= 1

    def test_keeps_going_after_failures(self):
        """Test the loop survives rejected, failed and crashing runs"""
        coord = ScriptedCoordinator([ConcurrencyRejected("busy"), PipelineError("stream offline"), RuntimeError("boom")])
        assert asyncio.run(_run_until(coord, ImmediateScheduler(), 4))
        assert coord.calls >= 4
        assert coord.outcomes == []

    @patch("capture.stream.subprocess.run", side_effect=PermissionError("denied"))
    def test_keeps_going_when_ytdlp_cannot_start(self, mock_run, tmp_path):
        """Test the loop survives a yt-dlp that cannot be executed"""
        source = SourceConfig(url="https://example.com/live", regions={"north": Region(x=0, y=0)})
        store = SnapshotStore(tmp_path / "data", CivilClock("America/New_York"))
        coord = UpdateCoordinator(ImagingPipeline(source), store, now_fn=lambda: NOW)

        async def drive():
            task = asyncio.create_task(_refresh_loop(ImmediateScheduler(), coord, False))
            for _ in range(500):
                if mock_run.call_count >= 3 or task.done():
                    break
                await asyncio.sleep(0.01)
            alive = not task.done()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return alive

        assert asyncio.run(drive())
        assert mock_run.call_count >= 3
        assert not coord.running
        assert "denied" in coord.last_error.message
        assert store.read_latest() is None

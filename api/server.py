from __future__ import annotations

import argparse
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.background import BackgroundTask

from api.query import QueryResolver
from cache.coordinator import UpdateCoordinator
from cache.scheduler import IntervalScheduler
from cache.snapshot_store import SnapshotStore
from capture.pipeline import ImagingPipeline
from common.civil_time import CivilClock, to_epoch_ms
from common.config import AppConfig, load_config
from common.errors import (
    ConcurrencyRejected,
    PipelineError,
    SnapshotNotFound,
    StoreIOError,
    ValidationError,
)
from common.logging_setup import get_logger, setup_logging

log = get_logger("api.server")


async def _refresh_loop(scheduler: IntervalScheduler, coordinator: UpdateCoordinator, run_first: bool) -> None:
    """Sleep to each interval boundary, then run one refresh in a worker thread."""
    if run_first:
        await _refresh_once(coordinator)
    while True:
        delay = scheduler.seconds_until_next()
        log.debug("Next scheduled refresh", extra={"extra": {"in_s": round(delay, 1)}})
        await asyncio.sleep(delay)
        await _refresh_once(coordinator)


async def _refresh_once(coordinator: UpdateCoordinator) -> None:
    try:
        await asyncio.to_thread(coordinator.trigger)
    except ConcurrencyRejected:
        log.info("Scheduled refresh skipped: update already in progress")
    except (PipelineError, StoreIOError):
        log.exception("Scheduled refresh failed")
    except Exception:
        # the loop must outlive any single run
        log.exception("Scheduled refresh failed unexpectedly")


def create_app(
    config: Optional[AppConfig] = None,
    *,
    pipeline: Optional[ImagingPipeline] = None,
    now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> FastAPI:
    """Wire store, scheduler, coordinator and resolver into a FastAPI app."""
    cfg = config or load_config()
    clock = CivilClock(cfg.timezone)
    cfg.data_dir.mkdir(parents=True, exist_ok=True)

    store = SnapshotStore(cfg.data_dir, clock)
    scheduler = IntervalScheduler(clock, cfg.cache.interval_minutes)
    coordinator = UpdateCoordinator(
        pipeline or ImagingPipeline(cfg.source),
        store,
        clock,
        image_dir=cfg.image_dir if cfg.images.enabled else None,
        now_fn=now_fn,
    )

    def image_urls() -> Dict[str, str]:
        if not cfg.images.enabled:
            return {}
        names = ["full", *cfg.source.regions]
        return {n: f"/data/images/{n}.png" for n in names if (cfg.image_dir / f"{n}.png").is_file()}

    resolver = QueryResolver(
        store,
        scheduler,
        source=cfg.source,
        image_urls=image_urls,
        recent_days=cfg.cache.recent_days,
        now_fn=now_fn,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if cfg.schedule.enabled:
            task = asyncio.create_task(_refresh_loop(scheduler, coordinator, cfg.schedule.run_on_startup))
            log.info("Refresh loop started", extra={"extra": {"interval_min": cfg.cache.interval_minutes}})
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(title="Sky Color Cache", version="1.0.0", lifespan=lifespan)
    app.state.config = cfg
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.resolver = resolver

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    # -------- error mapping --------

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        body = {"error": "invalid_request", "message": str(exc)}
        if exc.example:
            body["example"] = exc.example
        return JSONResponse(body, status_code=400)

    @app.exception_handler(SnapshotNotFound)
    async def _not_found(request: Request, exc: SnapshotNotFound):
        return JSONResponse({"error": exc.reason, "message": str(exc)}, status_code=404)

    @app.exception_handler(ConcurrencyRejected)
    async def _busy(request: Request, exc: ConcurrencyRejected):
        return JSONResponse({"error": "update_in_progress", "message": str(exc)}, status_code=429)

    @app.exception_handler(StoreIOError)
    async def _store_io(request: Request, exc: StoreIOError):
        log.error("Store I/O failure", extra={"extra": {"path": exc.path, "detail": str(exc)}})
        return JSONResponse({"error": "store_io_error", "message": "Failed to read the snapshot store"}, status_code=500)

    # -------- routes --------

    @app.get("/api")
    def api(date: Optional[str] = Query(None), time: Optional[str] = Query(None)):
        try:
            return resolver.resolve(date=date, time=time)
        except SnapshotNotFound as e:
            if e.reason != "no_data" or not cfg.cache.refresh_when_empty:
                raise
            if coordinator.try_begin():
                log.info("No cached data, generating initial snapshot in background")
                return JSONResponse(
                    {"error": "no_data", "message": "Cache is being generated, please try again in a moment"},
                    status_code=404,
                    background=BackgroundTask(coordinator.run_claimed),
                )
            return JSONResponse(
                {"error": "no_data", "message": "Cache is being generated, please try again in a moment"},
                status_code=404,
            )

    @app.get("/update-cache")
    def update_cache():
        if not coordinator.try_begin():
            raise ConcurrencyRejected("Cache update already in progress, try again later")
        return JSONResponse(
            {"status": "processing", "message": "Cache update started"},
            background=BackgroundTask(coordinator.run_claimed),
        )

    @app.get("/api/available-dates")
    def available_dates():
        return resolver.available_dates()

    @app.get("/api/recent")
    def recent():
        return resolver.recent()

    @app.get("/health")
    def health():
        now = now_fn()
        nxt = scheduler.next_boundary(now)
        return {
            "status": "ok",
            "store": {"root": str(store.root), **store.stats()},
            "update": coordinator.status(),
            "timezone": clock.tz_name,
            "intervalMinutes": scheduler.interval_minutes,
            "nextUpdate": {"timestamp": to_epoch_ms(nxt), "formatted": clock.format_instant(nxt)},
        }

    app.mount("/data", StaticFiles(directory=str(cfg.data_dir), check_dir=False), name="data")
    return app


# -------- local entrypoint --------
def main() -> None:
    ap = argparse.ArgumentParser(description="Sky color cache server")
    ap.add_argument("--config", default=None, help="YAML config (default: $SKYCOLOR_CONFIG or config/params.yaml)")
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None)
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.log_level, force=True)
    host = args.host or cfg.server.host
    port = args.port or cfg.server.port
    log.info("Server starting", extra={"extra": {"host": host, "port": port, "data_dir": str(cfg.data_dir)}})
    uvicorn.run(create_app(cfg), host=host, port=port)


if __name__ == "__main__":
    main()

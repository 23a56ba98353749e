import asyncio
import logging
from datetime import datetime
from typing import Optional

import pytz
import structlog
from fastapi import FastAPI, Request, Response, HTTPException

from .config import load_settings
from .database import DatabaseManager
from .runtime import build_engine, setup_logging
from .sync_engine import SyncEngine


app = FastAPI(title="Kuna CalSync Server", version="1.0")
logger = structlog.get_logger(__name__)


class SyncRuntime:
    """Background loop running a full resync on an interval or on demand."""

    def __init__(
        self,
        engine: SyncEngine,
        db_manager: Optional[DatabaseManager] = None,
        interval_seconds: int = 300,
        webhook_secret: Optional[str] = None,
    ):
        self.engine = engine
        self.db_manager = db_manager
        self.trigger = asyncio.Event()
        self.running = True
        self.last_sync: Optional[datetime] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.loop_interval_seconds = interval_seconds
        self.webhook_secret = webhook_secret

    def start(self) -> None:
        self.sync_task = asyncio.create_task(self.run())

    async def run(self):
        while self.running:
            try:
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.loop_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()

                if not self.running:
                    break
                await self.sync_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # keep the loop alive; the next run retries
                logger.exception("sync_run_failed")
                await asyncio.sleep(2)

    async def sync_once(self) -> None:
        reports = [r for r in await self.engine.resync_now() if r is not None]
        if self.db_manager is not None:
            with self.db_manager.get_session() as session:
                for report in reports:
                    self.db_manager.record_sync_report(session, report)
        self.last_sync = datetime.now(pytz.UTC)

    def signal(self):
        if not self.trigger.is_set():
            self.trigger.set()

    async def stop(self) -> None:
        self.running = False
        self.signal()
        if self.sync_task:
            await asyncio.wait([self.sync_task], timeout=5)
        await self.engine.close()


@app.on_event("startup")
async def on_startup():
    runtime: Optional[SyncRuntime] = getattr(app.state, "runtime", None)
    if runtime is None:
        settings = load_settings()
        setup_logging(settings.log_level, settings.debug)
        db_manager = DatabaseManager(settings)
        runtime = SyncRuntime(
            build_engine(settings, db_manager),
            db_manager,
            interval_seconds=settings.sync_config.poll_interval_seconds,
            webhook_secret=settings.webhook_secret,
        )
        app.state.runtime = runtime
    runtime.start()
    logging.getLogger(__name__).info(
        "Sync daemon started, interval %ss", runtime.loop_interval_seconds
    )


@app.on_event("shutdown")
async def on_shutdown():
    runtime: SyncRuntime = app.state.runtime
    await runtime.stop()


@app.get("/health")
async def health():
    rt: SyncRuntime = app.state.runtime
    return {
        "ok": True,
        "state": rt.engine.state.value,
        "last_sync": rt.last_sync.isoformat() if rt.last_sync else None,
        "interval_seconds": rt.loop_interval_seconds,
    }


@app.get("/status")
async def status():
    rt: SyncRuntime = app.state.runtime
    return rt.engine.status()


@app.post("/sync")
async def trigger_sync():
    app.state.runtime.signal()
    return Response(status_code=202)


@app.post("/webhooks/calendar")
async def calendar_webhook(request: Request):
    rt: SyncRuntime = app.state.runtime
    if rt.webhook_secret and request.headers.get("X-Webhook-Secret") != rt.webhook_secret:
        raise HTTPException(status_code=401, detail="invalid webhook secret")

    scheduled = rt.engine.trigger_from_local_change()
    return {"scheduled": scheduled}

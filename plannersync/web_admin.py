from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from plannersync.caldav_client import CalDAVService
from plannersync.collection_selector import select_target_collection
from plannersync.config_manager import ConfigManager
from plannersync.errors import PlannerSyncError
from plannersync.scheduler import SyncScheduler
from plannersync.state_store import StateStore
from plannersync.sync_engine import LAST_TARGET_META_KEY, SyncEngine

STATE_PATH_ENV = "PLANNERSYNC_STATE_PATH"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str | None, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def create_app() -> FastAPI:
    state_path = os.getenv(STATE_PATH_ENV, "data/state.db")
    context = AppContext(config_path=None, state_path=state_path)

    app = FastAPI(title="PlannerSync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/caldav/test")
    def test_caldav() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        if not config.caldav.is_complete():
            return {"ok": False, "message": "CalDAV server_url/username not configured.", "calendars": 0}
        ok, message, count = CalDAVService(config.caldav).check_connection()
        return {"ok": ok, "message": message, "calendars": count}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        try:
            calendars = CalDAVService(config.caldav).list_calendars()
            target = select_target_collection(calendars)
        except PlannerSyncError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        output = []
        for cal in calendars:
            item = cal.to_dict()
            item["selected"] = cal.url == target.url
            output.append(item)
        return {"calendars": output, "selected_url": target.url}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {
            "scheduler_running": app.state.context.scheduler.running,
            "last_target_url": app.state.context.state_store.get_meta(LAST_TARGET_META_KEY),
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/sync/runs/{run_id}")
    def sync_run(run_id: int, limit: int = 500) -> dict[str, Any]:
        run = app.state.context.state_store.get_sync_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        events = app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)
        return {"run": run, "events": events}

    return app

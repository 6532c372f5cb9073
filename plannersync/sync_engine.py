from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from plannersync.activity_store import ActivityStore
from plannersync.caldav_client import CalDAVService
from plannersync.collection_selector import select_target_collection
from plannersync.config_manager import ConfigManager
from plannersync.models import Activity, CalendarInfo, SyncConfig, SyncResult, TimeWindow
from plannersync.planner import compute_time_window
from plannersync.reconciler import ReconcileOutcome, Reconciler
from plannersync.remote_index import RemoteIndexer
from plannersync.state_store import StateStore

logger = logging.getLogger(__name__)

LAST_TARGET_META_KEY = "last_target_url"


@dataclass
class PushReport:
    target: CalendarInfo
    window: TimeWindow | None
    index_stats: dict[str, int]
    outcomes: list[ReconcileOutcome] = field(default_factory=list)
    cancelled: bool = False

    def count(self, action: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.action == action)


def push_activities(
    service: CalDAVService,
    activities: list[Activity],
    sync_config: SyncConfig,
    *,
    stop_event: threading.Event | None = None,
    clock: Callable[[], datetime] | None = None,
) -> PushReport:
    """One local-to-remote pass. Only discovery failures propagate."""
    target = select_target_collection(service.list_calendars())
    window = compute_time_window(
        activities,
        pad=sync_config.window_pad,
        default_duration=sync_config.default_duration,
    )
    index = RemoteIndexer(service).load(target.url, window)
    reconciler = Reconciler(
        service,
        target.url,
        index,
        default_duration=sync_config.default_duration,
        clock=clock,
    )
    report = PushReport(target=target, window=window, index_stats=index.stats())
    for activity in activities:
        if stop_event is not None and stop_event.is_set():
            logger.info("Stop requested, leaving %d tasks for the next run", len(activities) - len(report.outcomes))
            report.cancelled = True
            break
        try:
            outcome = reconciler.reconcile(activity)
        except Exception:
            logger.exception("Failed to sync task %s", activity.title)
            outcome = ReconcileOutcome(
                activity_id=activity.activity_id,
                title=activity.title,
                action="failed",
                reason="unexpected_error",
            )
        report.outcomes.append(outcome)
    return report


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        activity_store: ActivityStore | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.activity_store = activity_store

    def _elapsed_ms(self, started_at: datetime) -> int:
        return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)

    def run_once(self, trigger: str = "manual", stop_event: threading.Event | None = None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(trigger=trigger)

        try:
            config = self.config_manager.load()
            if not config.caldav.is_complete():
                message = "CalDAV config missing server_url/username. Sync skipped."
                duration_ms = self._elapsed_ms(started_at)
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="skipped",
                    message=message,
                    duration_ms=duration_ms,
                )
                return SyncResult(
                    status="skipped",
                    message=message,
                    duration_ms=duration_ms,
                    created=0,
                    updated=0,
                    failed=0,
                    skipped=0,
                    trigger=trigger,
                    run_id=run_id,
                )

            activity_store = self.activity_store or ActivityStore(config.store.tasks_path)
            activities = activity_store.load(config.sync.timezone)
            service = CalDAVService(config.caldav)
            report = push_activities(service, activities, config.sync, stop_event=stop_event)

            for outcome in report.outcomes:
                self.state_store.record_audit_event(
                    activity_id=outcome.activity_id,
                    action=outcome.action,
                    reason=outcome.reason,
                    tier=outcome.tier,
                    details={"trigger": trigger, **outcome.to_dict()},
                    run_id=run_id,
                )
            self.state_store.set_meta(LAST_TARGET_META_KEY, report.target.url)

            counts: dict[str, Any] = {
                "created": report.count("created"),
                "updated": report.count("updated"),
                "failed": report.count("failed"),
                "skipped": report.count("skipped"),
            }
            status = "cancelled" if report.cancelled else "success"
            message = (
                f"Synced {counts['created'] + counts['updated']}/{len(activities)} tasks to "
                f"{report.target.name}; {counts['failed']} failed."
            )
            duration_ms = self._elapsed_ms(started_at)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                target_url=report.target.url,
                **counts,
            )
            logger.info("Sync run %s finished: %s", run_id, message)
            return SyncResult(
                status=status,
                message=message,
                duration_ms=duration_ms,
                trigger=trigger,
                run_id=run_id,
                **counts,
            )
        except Exception as exc:
            duration_ms = self._elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync run %s failed: %s", run_id, error_message)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
            )
            self.state_store.record_audit_event(
                activity_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                created=0,
                updated=0,
                failed=0,
                skipped=0,
                trigger=trigger,
                run_id=run_id,
            )

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT NOT NULL DEFAULT '',
    started_at TEXT NOT NULL,
    finished_at TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    target_url TEXT,
    created INTEGER NOT NULL DEFAULT 0,
    updated INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER REFERENCES sync_runs(id),
    recorded_at TEXT NOT NULL,
    activity_id TEXT NOT NULL,
    action TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    tier INTEGER,
    details_json TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_audit_events_run ON audit_events(run_id);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

RUN_COLUMNS = (
    "id, trigger, status, message, started_at, finished_at, duration_ms, "
    "target_url, created, updated, failed, skipped"
)
EVENT_COLUMNS = "id, run_id, recorded_at, activity_id, action, reason, tier, details_json"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _event_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["details"] = json.loads(item.pop("details_json") or "{}")
    return item


class StateStore:
    """Run history and per-activity outcomes, one SQLite file shared by the scheduler and the admin app."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._lock, self._connect() as conn:
            conn.executescript(SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(sql, params)
            return int(cursor.lastrowid or 0)

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock, self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        return self._execute(
            "INSERT INTO sync_runs(trigger, status, message, started_at) VALUES (?, 'running', ?, ?)",
            (trigger, message, _utc_now()),
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        updated: int = 0,
        failed: int = 0,
        skipped: int = 0,
        target_url: str | None = None,
    ) -> None:
        self._execute(
            """
            UPDATE sync_runs
            SET status = ?, message = ?, finished_at = ?, duration_ms = ?, target_url = ?,
                created = ?, updated = ?, failed = ?, skipped = ?
            WHERE id = ?
            """,
            (
                status,
                message,
                _utc_now(),
                int(duration_ms),
                target_url,
                int(created),
                int(updated),
                int(failed),
                int(skipped),
                int(run_id),
            ),
        )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._query(f"SELECT {RUN_COLUMNS} FROM sync_runs ORDER BY id DESC LIMIT ?", (max(1, limit),))
        return [dict(row) for row in rows]

    def get_sync_run(self, run_id: int) -> dict[str, Any] | None:
        rows = self._query(f"SELECT {RUN_COLUMNS} FROM sync_runs WHERE id = ?", (int(run_id),))
        return dict(rows[0]) if rows else None

    def record_audit_event(
        self,
        *,
        activity_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
        reason: str = "",
        tier: int | None = None,
    ) -> None:
        self._execute(
            "INSERT INTO audit_events(run_id, recorded_at, activity_id, action, reason, tier, details_json) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                run_id,
                _utc_now(),
                activity_id,
                action,
                reason,
                tier,
                json.dumps(details, ensure_ascii=False, default=str),
            ),
        )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        # Per-run listings read in write order; the global feed is newest first.
        if run_id is None:
            rows = self._query(
                f"SELECT {EVENT_COLUMNS} FROM audit_events ORDER BY id DESC LIMIT ?",
                (max(1, limit),),
            )
        else:
            rows = self._query(
                f"SELECT {EVENT_COLUMNS} FROM audit_events WHERE run_id = ? ORDER BY id ASC LIMIT ?",
                (int(run_id), max(1, limit)),
            )
        return [_event_row(row) for row in rows]

    def set_meta(self, key: str, value: str) -> None:
        self._execute(
            """
            INSERT INTO app_meta(key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (str(key), str(value), _utc_now()),
        )

    def get_meta(self, key: str) -> str | None:
        rows = self._query("SELECT value FROM app_meta WHERE key = ?", (str(key),))
        return str(rows[0]["value"]) if rows else None

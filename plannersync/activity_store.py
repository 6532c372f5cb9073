from __future__ import annotations

import json
import logging
import os
import re
from datetime import date, datetime, time, timezone, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from plannersync.errors import ConfigurationError
from plannersync.models import Activity

logger = logging.getLogger(__name__)

CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown timezone: {name!r}") from exc


def _parse_day(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def parse_instant(value: Any, day: date | None, tz: tzinfo) -> datetime | None:
    """Read an ISO instant or an HH:mm clock time on ``day``; return it in UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        clock = CLOCK_PATTERN.match(text)
        if clock:
            if day is None:
                return None
            hour, minute, second = int(clock.group(1)), int(clock.group(2)), int(clock.group(3) or 0)
            try:
                parsed = datetime.combine(day, time(hour, minute, second))
            except ValueError:
                return None
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def activity_from_dict(item: dict[str, Any], tz: tzinfo = timezone.utc) -> Activity | None:
    activity_id = str(item.get("id") or item.get("activity_id") or "").strip()
    if not activity_id:
        return None
    day = _parse_day(item.get("date", item.get("day")))
    start_raw = item.get("startTime", item.get("start"))
    end_raw = item.get("endTime", item.get("end"))
    start = parse_instant(start_raw, day, tz)
    end = parse_instant(end_raw, day, tz)
    if start_raw and start is None:
        logger.warning("Ignoring unparseable start time %r on task %s", start_raw, activity_id)
    if end_raw and end is None:
        logger.warning("Ignoring unparseable end time %r on task %s", end_raw, activity_id)
    has_time = item.get("hasTime", item.get("has_time"))
    return Activity(
        activity_id=activity_id,
        title=str(item.get("title") or ""),
        description=str(item.get("description") or ""),
        day=day,
        start=start,
        end=end,
        has_time=bool(has_time) if has_time is not None else True,
    )


def _extract_tasks(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    state = payload.get("state")
    if isinstance(state, dict) and isinstance(state.get("tasks"), list):
        return state["tasks"]
    tasks = payload.get("tasks")
    return tasks if isinstance(tasks, list) else []


class ActivityStore:
    """Read-only view of the planner's exported task list (JSON or YAML)."""

    def __init__(self, tasks_path: str | os.PathLike[str]) -> None:
        self.tasks_path = Path(tasks_path)

    def _read(self) -> Any:
        if not self.tasks_path.exists():
            logger.warning("Task file %s does not exist, nothing to sync", self.tasks_path)
            return []
        with self.tasks_path.open("r", encoding="utf-8") as handle:
            if self.tasks_path.suffix.lower() == ".json":
                return json.load(handle)
            return yaml.safe_load(handle) or []

    def load(self, timezone_name: str = "UTC") -> list[Activity]:
        tz = resolve_timezone(timezone_name)
        activities: list[Activity] = []
        for item in _extract_tasks(self._read()):
            if not isinstance(item, dict):
                continue
            activity = activity_from_dict(item, tz)
            if activity is not None:
                activities.append(activity)
        return activities

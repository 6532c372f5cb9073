from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.prop import vInline

from plannersync.models import DEFAULT_DURATION, Activity

PRODID = "-//plannersync//Daily Planner Sync//EN"
STORAGE_SUFFIX = ".ics"

_FOLDED_LINE = re.compile(r"\r?\n[ \t]")
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def escape_text(value: str) -> str:
    """Escape a TEXT value: backslash first, then line breaks, then ; and ,."""
    escaped = str(value or "").replace("\\", "\\\\")
    escaped = _LINE_BREAK.sub(lambda _match: "\\n", escaped)
    return escaped.replace(";", "\\;").replace(",", "\\,")


def format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def storage_name(uid: str) -> str:
    return f"{uid}{STORAGE_SUFFIX}"


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def encode_activity(
    activity: Activity,
    *,
    now: datetime | None = None,
    default_duration: timedelta = DEFAULT_DURATION,
) -> str:
    span = activity.span(default_duration)
    if span is None:
        raise ValueError(f"Activity {activity.activity_id!r} has no start or end time.")
    start, end = span
    stamp = now or datetime.now(timezone.utc)

    calendar_obj = ICalendar()
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("CALSCALE", "GREGORIAN")
    calendar_obj.add("METHOD", "PUBLISH")
    calendar_obj.add("PRODID", PRODID)

    vevent = ICEvent()
    # UID goes out verbatim so it matches the storage name and the local id.
    vevent.add("UID", vInline(activity.activity_id), encode=False)
    vevent.add("DTSTAMP", _utc(stamp))
    vevent.add("DTSTART", _utc(start))
    vevent.add("DTEND", _utc(end))
    vevent.add("SUMMARY", vInline(escape_text(activity.title)), encode=False)
    vevent.add("DESCRIPTION", vInline(escape_text(activity.description)), encode=False)
    vevent.add("STATUS", "CONFIRMED")
    vevent.add("SEQUENCE", 0)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def unfold_lines(raw_ical: str) -> list[str]:
    return _LINE_BREAK.split(_FOLDED_LINE.sub("", raw_ical))


def extract_uid(raw_data: Any) -> str | None:
    if not raw_data:
        return None
    for line in unfold_lines(_decode_raw_ical(raw_data)):
        name, separator, value = line.partition(":")
        if not separator:
            continue
        if name.split(";", 1)[0].strip().upper() != "UID":
            continue
        uid = value.strip()
        if uid:
            return uid
    return None

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Mapping


DEFAULT_DURATION = timedelta(hours=1)
MISSING_ETAG_VALUES = {"", "undefined", "null", "none"}


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def normalize_etag(value: Any) -> str | None:
    """Return a usable entity tag, or None when the server sent nothing meaningful."""
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in MISSING_ETAG_VALUES:
        return None
    return text


@dataclass
class CalDAVConfig:
    server_url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            server_url=str(data.get("server_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )

    def is_complete(self) -> bool:
        return bool(self.server_url and self.username)


@dataclass
class SyncConfig:
    interval_seconds: int = 900
    auto_sync: bool = False
    timezone: str = "UTC"
    window_pad_hours: int = 24
    default_duration_minutes: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            auto_sync=bool(data.get("auto_sync", False)),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            window_pad_hours=max(0, int(data.get("window_pad_hours", 24))),
            default_duration_minutes=max(1, int(data.get("default_duration_minutes", 60))),
        )

    @property
    def window_pad(self) -> timedelta:
        return timedelta(hours=self.window_pad_hours)

    @property
    def default_duration(self) -> timedelta:
        return timedelta(minutes=self.default_duration_minutes)


@dataclass
class StoreConfig:
    tasks_path: str = "data/tasks.json"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoreConfig":
        data = data or {}
        return cls(tasks_path=str(data.get("tasks_path", "data/tasks.json")).strip() or "data/tasks.json")


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            store=StoreConfig.from_dict(data.get("store")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Activity:
    """A planner task as read from the local store. Never written back."""

    activity_id: str
    title: str = ""
    description: str = ""
    day: date | None = None
    start: datetime | None = None
    end: datetime | None = None
    has_time: bool = True

    @property
    def is_timed(self) -> bool:
        return self.has_time and (self.start is not None or self.end is not None)

    def span(self, default_duration: timedelta = DEFAULT_DURATION) -> tuple[datetime, datetime] | None:
        """Resolve (start, end) in UTC, filling in a missing or inverted end."""
        if not self.is_timed:
            return None
        start = self.start
        end = self.end
        if start is None:
            if end is None:
                return None
            start = end - default_duration
        start = _ensure_tz(start).astimezone(timezone.utc)
        if end is None or _ensure_tz(end) < start:
            end = start + default_duration
        return start, _ensure_tz(end).astimezone(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "title": self.title,
            "description": self.description,
            "day": self.day.isoformat() if self.day else None,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "has_time": self.has_time,
        }


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime


@dataclass
class RemoteObject:
    url: str
    etag: str | None = None
    data: str | None = None

    def __post_init__(self) -> None:
        self.etag = normalize_etag(self.etag)

    @property
    def has_data(self) -> bool:
        return isinstance(self.data, str) and bool(self.data)


@dataclass(frozen=True)
class RemoteIndex:
    by_uid: Mapping[str, RemoteObject] = field(default_factory=lambda: MappingProxyType({}))
    by_filename: Mapping[str, RemoteObject] = field(default_factory=lambda: MappingProxyType({}))
    total: int = 0
    with_data: int = 0

    def find(self, filename: str, uid: str) -> RemoteObject | None:
        return self.by_filename.get(filename) or self.by_uid.get(uid)

    def stats(self) -> dict[str, int]:
        return {"total": self.total, "with_data": self.with_data, "uid_count": len(self.by_uid)}


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str
    components: list[str] | None = None
    read_only: bool = False

    def supports_events(self) -> bool:
        if not self.components:
            return True
        return "VEVENT" in {component.upper() for component in self.components}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TierAttempt:
    tier: int
    name: str
    url: str = ""
    precondition: str | None = None
    status: int | None = None
    skipped: bool = False
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    created: int
    updated: int
    failed: int
    skipped: int
    trigger: str
    run_id: int | None = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "trigger": self.trigger,
            "run_id": self.run_id,
            "run_at": serialize_datetime(self.run_at),
        }

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlsplit

import caldav

from plannersync.dav_transport import (
    DAVResponse,
    DAVTransport,
    build_calendar_multiget,
    build_calendar_query,
    build_uid_query,
    collection_props_query,
    collection_url,
    etag_query,
    is_read_only,
    member_url,
    object_url,
)
from plannersync.errors import ConfigurationError, DiscoveryError, TransportError
from plannersync.ical_codec import storage_name
from plannersync.models import CalDAVConfig, CalendarInfo, RemoteObject, TimeWindow

logger = logging.getLogger(__name__)


def sanitize_server_url(server_url: str, username: str = "") -> str:
    url = str(server_url or "").strip()
    if not url:
        raise ConfigurationError("CalDAV server_url is empty.")
    if not url.startswith("http://") and not url.startswith("https://"):
        url = f"https://{url}"
    # QQ Mail only answers on the per-user path.
    if "dav.qq.com" in url and "/dav/" not in url:
        user_part = username.split("@", 1)[0] if "@" in username else username
        url = f"https://dav.qq.com/dav/{user_part.strip()}/"
        logger.info("Rewrote QQ CalDAV URL to %s", url)
    parts = urlsplit(url)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ConfigurationError(f"Invalid CalDAV server_url: {server_url!r}")
    return url


def _objects_from_multistatus(calendar_url: str, response: DAVResponse) -> list[RemoteObject]:
    own_url = collection_url(calendar_url)
    objects: list[RemoteObject] = []
    for entry in response.entries:
        if not entry.ok:
            continue
        url = member_url(calendar_url, entry.href)
        if url is None or collection_url(url) == own_url:
            continue
        objects.append(
            RemoteObject(
                url=url,
                etag=entry.props.get("getetag"),
                data=entry.props.get("calendar-data"),
            )
        )
    return objects


class CalDAVService:
    """Calendar discovery and object I/O over a single ``caldav.DAVClient``."""

    def __init__(self, config: CalDAVConfig, client: caldav.DAVClient | None = None) -> None:
        self.config = config
        self._client = client
        self._transport: DAVTransport | None = None
        self._principal: Any = None

    @property
    def client(self) -> caldav.DAVClient:
        if self._client is None:
            if not self.config.is_complete():
                raise ConfigurationError("CalDAV config is incomplete.")
            self._client = caldav.DAVClient(
                url=sanitize_server_url(self.config.server_url, self.config.username),
                username=self.config.username,
                password=self.config.password,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    @property
    def transport(self) -> DAVTransport:
        if self._transport is None:
            self._transport = DAVTransport(self.client)
        return self._transport

    def _connect(self) -> None:
        if self._principal is not None:
            return
        client = self.client
        try:
            self._principal = client.principal()
        except Exception as exc:
            raise DiscoveryError(f"CalDAV principal discovery failed: {type(exc).__name__}: {exc}") from exc

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        try:
            discovered = list(self._principal.calendars())
        except Exception as exc:
            raise DiscoveryError(f"Listing calendars failed: {type(exc).__name__}: {exc}") from exc
        calendars: list[CalendarInfo] = []
        for calendar in discovered:
            url = str(calendar.url)
            name = getattr(calendar, "name", "") or url
            info = CalendarInfo(calendar_id=url, name=name, url=url)
            self._describe_collection(info)
            calendars.append(info)
        return calendars

    def _describe_collection(self, info: CalendarInfo) -> None:
        try:
            response = self.transport.propfind(info.url, collection_props_query(), depth=0)
        except TransportError:
            logger.warning("Could not read properties of %s", info.url, exc_info=True)
            return
        entries = [entry for entry in response.entries if entry.ok]
        if not entries:
            logger.warning("PROPFIND on %s returned %s", info.url, response.status)
            return
        props = entries[0].props
        info.name = props.get("displayname") or info.name
        info.components = props.get("supported-calendar-component-set") or None
        info.read_only = is_read_only(props.get("current-user-privilege-set"))

    def check_connection(self) -> tuple[bool, str, int]:
        try:
            calendars = self.list_calendars()
        except Exception as exc:
            logger.error("CalDAV connection check failed: %s", exc)
            return False, f"{type(exc).__name__}: {exc}", 0
        if not calendars:
            return False, "Connected, but no calendars were found.", 0
        return True, f"Connected. Found {len(calendars)} calendars.", len(calendars)

    def fetch_objects(self, calendar_url: str, window: TimeWindow | None = None) -> list[RemoteObject]:
        response = self.transport.report(calendar_url, build_calendar_query(window), depth=1)
        if not response.ok:
            logger.error("Listing %s failed: %s", calendar_url, response.describe())
            return []
        return _objects_from_multistatus(calendar_url, response)

    def fetch_objects_with_data(self, calendar_url: str, hrefs: list[str]) -> list[RemoteObject]:
        if hrefs:
            query = build_calendar_multiget([urlsplit(href).path or href for href in hrefs])
        else:
            query = build_calendar_query(None)
        response = self.transport.report(calendar_url, query, depth=1)
        if not response.ok:
            logger.error("Fetching calendar data from %s failed: %s", calendar_url, response.describe())
            return []
        return _objects_from_multistatus(calendar_url, response)

    def lookup_by_uid(self, calendar_url: str, uid: str) -> RemoteObject | None:
        response = self.transport.report(calendar_url, build_uid_query(uid), depth=1)
        if not response.ok:
            logger.error("UID lookup for %s failed: %s", uid, response.describe())
            return None
        for remote in _objects_from_multistatus(calendar_url, response):
            if ".ics" in remote.url:
                return remote
        return None

    def fetch_etag(self, url: str) -> str | None:
        response = self.transport.propfind(url, etag_query(), depth=0)
        for entry in response.entries:
            if entry.ok:
                return entry.props.get("getetag")
        logger.warning(
            "PROPFIND ETag failed for %s: status=%s entries=%s",
            url,
            response.status,
            [(entry.href, entry.status) for entry in response.entries],
        )
        return None

    def object_url(self, calendar_url: str, uid: str) -> str:
        return object_url(calendar_url, storage_name(uid))

    def create_object(self, calendar_url: str, uid: str, document: str) -> tuple[str, DAVResponse]:
        url = self.object_url(calendar_url, uid)
        return url, self.transport.put(url, document, if_none_match="*")

    def update_object(self, url: str, document: str, if_match: str | None = None) -> DAVResponse:
        return self.transport.put(url, document, if_match=if_match)

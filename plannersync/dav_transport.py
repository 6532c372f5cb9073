"""CalDAV object requests issued through the connected ``caldav.DAVClient``.

Request bodies are assembled from caldav's element classes and multistatus
replies are read with the client's own response parsing, so collection
discovery and object writes share one session and one negotiated auth
scheme. Every request returns a :class:`DAVResponse` whatever the status
code; only failures that leave no usable reply raise
:class:`~plannersync.errors.TransportError`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from urllib.parse import quote, unquote, urljoin, urlsplit

import caldav
from caldav.elements import cdav, dav
from caldav.elements.base import BaseElement
from caldav.lib import error as dav_error
from caldav.lib.namespace import ns
from lxml import etree
from requests.structures import CaseInsensitiveDict

from plannersync.errors import TransportError
from plannersync.models import TimeWindow, normalize_etag

logger = logging.getLogger(__name__)

ICAL_CONTENT_TYPE = "text/calendar; charset=utf-8"
WRITE_PRIVILEGES = {"write", "write-content", "bind", "all"}

_HREF_PATTERN = re.compile(r"<(?:[^>]*:)?href>([^<]+)</(?:[^>]*:)?href>", re.IGNORECASE)
_STATUS_PATTERN = re.compile(r"HTTP/\d(?:\.\d)?\s+(\d{3})")


class CurrentUserPrivilegeSet(BaseElement):
    tag = ns("D", "current-user-privilege-set")


def _object_props() -> BaseElement:
    return dav.Prop() + [dav.GetEtag(), cdav.CalendarData()]


def collection_props_query() -> BaseElement:
    return dav.Propfind() + (
        dav.Prop() + [dav.DisplayName(), cdav.SupportedCalendarComponentSet(), CurrentUserPrivilegeSet()]
    )


def etag_query() -> BaseElement:
    return dav.Propfind() + (dav.Prop() + dav.GetEtag())


def build_calendar_query(window: TimeWindow | None = None) -> BaseElement:
    events = cdav.CompFilter("VEVENT")
    if window is not None:
        events += cdav.TimeRange(window.start, window.end)
    return cdav.CalendarQuery() + [_object_props(), cdav.Filter() + (cdav.CompFilter("VCALENDAR") + events)]


def build_uid_query(uid: str) -> BaseElement:
    match_uid = cdav.PropFilter("UID") + cdav.TextMatch(uid, collation="i;octet")
    events = cdav.CompFilter("VEVENT") + match_uid
    return cdav.CalendarQuery() + [_object_props(), cdav.Filter() + (cdav.CompFilter("VCALENDAR") + events)]


def build_calendar_multiget(hrefs: list[str]) -> BaseElement:
    return cdav.CalendarMultiGet() + _object_props() + [dav.Href(value=href) for href in hrefs]


def xml_body(query: BaseElement) -> bytes:
    return etree.tostring(query.xmlelement(), encoding="utf-8", xml_declaration=True)


@dataclass
class MultistatusEntry:
    href: str
    status: int | None = None
    props: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is None or 200 <= self.status < 300


@dataclass
class DAVResponse:
    status: int
    reason: str = ""
    headers: Mapping[str, str] = field(default_factory=CaseInsensitiveDict)
    text: str = ""
    entries: list[MultistatusEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.headers = CaseInsensitiveDict(self.headers or {})

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_conflict(self) -> bool:
        return self.status == 409

    @property
    def is_precondition_failed(self) -> bool:
        return self.status == 412

    def header(self, name: str) -> str | None:
        value = self.headers.get(name)
        if value is None:
            return None
        return str(value).strip() or None

    def describe(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "headers": dict(self.headers),
            "body": self.text,
        }


def _parse_status(text: str | None) -> int | None:
    if not text:
        return None
    match = _STATUS_PATTERN.search(text)
    return int(match.group(1)) if match else None


def _local_name(tag: Any) -> str:
    return str(tag).rsplit("}", 1)[-1]


def _components(element: Any) -> list[str] | None:
    if element is None or isinstance(element, str):
        return None
    return [str(comp.get("name")).upper() for comp in element if comp.get("name")]


def _privileges(element: Any) -> list[str] | None:
    if element is None or isinstance(element, str):
        return None
    return [_local_name(grant.tag) for privilege in element for grant in privilege]


def read_multistatus(response: Any) -> list[MultistatusEntry]:
    """Turn a parsed caldav multistatus reply into plain entries keyed by prop name."""
    if response.status != 207 or response.tree is None:
        return []
    found = response.expand_simple_props([dav.GetEtag(), cdav.CalendarData(), dav.DisplayName()])
    statuses = getattr(response, "statuses", {}) or {}
    entries: list[MultistatusEntry] = []
    for href, props in found.items():
        values: dict[str, Any] = {}
        if dav.GetEtag.tag in props:
            values["getetag"] = normalize_etag(props[dav.GetEtag.tag])
        if props.get(cdav.CalendarData.tag):
            values["calendar-data"] = props[cdav.CalendarData.tag]
        if props.get(dav.DisplayName.tag) is not None:
            values["displayname"] = props[dav.DisplayName.tag].strip()
        components = _components(props.get(cdav.SupportedCalendarComponentSet.tag))
        if components is not None:
            values["supported-calendar-component-set"] = components
        privileges = _privileges(props.get(CurrentUserPrivilegeSet.tag))
        if privileges is not None:
            values["current-user-privilege-set"] = privileges
        entries.append(MultistatusEntry(href=href, status=_parse_status(statuses.get(href)), props=values))
    return entries


def extract_conflict_href(response: DAVResponse) -> str | None:
    """Find the colliding resource a 409 points at: headers first, then body."""
    for header in ("Location", "Content-Location"):
        value = response.header(header)
        if value:
            return value
    matches = [match.strip() for match in _HREF_PATTERN.findall(response.text or "") if match.strip()]
    if not matches:
        return None
    for href in matches:
        if ".ics" in href:
            return href
    return matches[0]


def collection_url(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


def resolve_href(base_url: str, href: str) -> str:
    if href.startswith("http://") or href.startswith("https://"):
        return href
    return urljoin(collection_url(base_url), href)


def object_url(calendar_url: str, filename: str) -> str:
    return urljoin(collection_url(calendar_url), quote(filename, safe=""))


def member_url(calendar_url: str, href: str) -> str | None:
    """Rebuild a member URL from a multistatus href.

    The client hands hrefs back percent-decoded, so an encoded ``/`` inside a
    resource name is indistinguishable from a path separator. Members are
    direct children of the collection: everything after the collection path
    is the resource name and gets quoted again as one segment.
    """
    path = urlsplit(href).path if "://" in href else href
    base = collection_url(calendar_url)
    base_path = unquote(urlsplit(base).path)
    if path.startswith(base_path):
        name = path[len(base_path):]
        return object_url(base, name) if name.strip("/") else None
    return urljoin(base, quote(path, safe="/"))


def filename_from_url(url: str) -> str | None:
    path = urlsplit(url).path if "://" in url else url
    tail = path.rsplit("/", 1)[-1]
    return unquote(tail) or None


def is_read_only(privileges: list[str] | None) -> bool:
    if privileges is None:
        return False
    return not (WRITE_PRIVILEGES & {name.lower() for name in privileges})


class DAVTransport:
    def __init__(self, client: caldav.DAVClient) -> None:
        self.client = client

    def _send(self, method: str, url: str, call: Callable[..., Any], *args: Any) -> DAVResponse:
        try:
            raw = call(*args)
            entries = read_multistatus(raw)
        except (dav_error.DAVError, etree.LxmlError, OSError) as exc:
            raise TransportError(method, url, exc) from exc
        return DAVResponse(
            status=raw.status,
            reason=raw.reason or "",
            headers=raw.headers,
            text=raw.raw or "",
            entries=entries,
        )

    def propfind(self, url: str, query: BaseElement, depth: int = 0) -> DAVResponse:
        return self._send("PROPFIND", url, self.client.propfind, url, xml_body(query), depth)

    def report(self, url: str, query: BaseElement, depth: int = 1) -> DAVResponse:
        return self._send("REPORT", url, self.client.report, url, xml_body(query), depth)

    def put(
        self,
        url: str,
        data: str,
        *,
        if_match: str | None = None,
        if_none_match: str | None = None,
    ) -> DAVResponse:
        headers = {"Content-Type": ICAL_CONTENT_TYPE}
        if if_match:
            headers["If-Match"] = if_match
        if if_none_match:
            headers["If-None-Match"] = if_none_match
        return self._send("PUT", url, self.client.put, url, data, headers)

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Iterable, Protocol

from plannersync.dav_transport import filename_from_url
from plannersync.errors import TransportError
from plannersync.ical_codec import extract_uid
from plannersync.models import RemoteIndex, RemoteObject, TimeWindow

logger = logging.getLogger(__name__)


class RemoteObjectSource(Protocol):
    def fetch_objects(self, calendar_url: str, window: TimeWindow | None = None) -> list[RemoteObject]:
        ...

    def fetch_objects_with_data(self, calendar_url: str, hrefs: list[str]) -> list[RemoteObject]:
        ...


def build_index(objects: Iterable[RemoteObject]) -> RemoteIndex:
    by_uid: dict[str, RemoteObject] = {}
    by_filename: dict[str, RemoteObject] = {}
    total = 0
    with_data = 0
    for remote in objects:
        total += 1
        if remote.url:
            filename = filename_from_url(remote.url)
            if filename:
                by_filename[filename] = remote
        if remote.has_data:
            with_data += 1
            uid = extract_uid(remote.data)
            if uid:
                by_uid[uid] = remote
    return RemoteIndex(
        by_uid=MappingProxyType(by_uid),
        by_filename=MappingProxyType(by_filename),
        total=total,
        with_data=with_data,
    )


class RemoteIndexer:
    """Builds the per-run lookup of what already exists in the target collection.

    Never raises: a listing that fails is logged and indexed as empty, which
    is also what a first-ever sync looks like.
    """

    def __init__(self, source: RemoteObjectSource) -> None:
        self.source = source

    def _fetch(self, calendar_url: str, window: TimeWindow | None) -> list[RemoteObject]:
        try:
            return self.source.fetch_objects(calendar_url, window)
        except TransportError as exc:
            logger.error("Listing remote objects failed: %s", exc)
            return []

    def load(self, calendar_url: str, window: TimeWindow | None) -> RemoteIndex:
        objects = self._fetch(calendar_url, window)
        if window is not None and not objects:
            # Some servers mishandle time-range filters; retry once unbounded.
            logger.info("Bounded listing returned nothing, retrying without a time range")
            objects = self._fetch(calendar_url, None)

        index = build_index(objects)
        if objects and not index.by_uid:
            logger.info("Listing carried no usable UIDs, requesting calendar data explicitly")
            try:
                full_objects = self.source.fetch_objects_with_data(
                    calendar_url, [remote.url for remote in objects if remote.url]
                )
            except TransportError as exc:
                logger.error("Fetching calendar data failed: %s", exc)
                full_objects = []
            if full_objects:
                index = build_index(full_objects)

        logger.info("Remote objects indexed: %s", index.stats())
        return index

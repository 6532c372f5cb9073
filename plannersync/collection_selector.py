from __future__ import annotations

import logging
from typing import Sequence

from plannersync.errors import DiscoveryError
from plannersync.models import CalendarInfo

logger = logging.getLogger(__name__)


def select_target_collection(calendars: Sequence[CalendarInfo]) -> CalendarInfo:
    """Pick the first writable event calendar, then any writable one, then the first found."""
    if not calendars:
        raise DiscoveryError("No calendars available on the CalDAV server.")
    writable = [calendar for calendar in calendars if not calendar.read_only]
    event_capable = [calendar for calendar in writable if calendar.supports_events()]
    if event_capable:
        target = event_capable[0]
    elif writable:
        target = writable[0]
    else:
        target = calendars[0]
    logger.info(
        "Syncing to calendar %s (%s) out of %d discovered",
        target.name or "Default",
        target.url,
        len(calendars),
    )
    return target

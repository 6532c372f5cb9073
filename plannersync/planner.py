from __future__ import annotations

from datetime import timedelta
from typing import Iterable

from plannersync.models import DEFAULT_DURATION, Activity, TimeWindow

WINDOW_PAD = timedelta(days=1)


def compute_time_window(
    activities: Iterable[Activity],
    *,
    pad: timedelta = WINDOW_PAD,
    default_duration: timedelta = DEFAULT_DURATION,
) -> TimeWindow | None:
    """Bound the remote listing to the span covered by timed activities.

    Returns None when nothing is timed, in which case the caller lists the
    whole collection.
    """
    earliest = None
    latest = None
    for activity in activities:
        span = activity.span(default_duration)
        if span is None:
            continue
        start, end = span
        if earliest is None or start < earliest:
            earliest = start
        if latest is None or end > latest:
            latest = end
    if earliest is None or latest is None:
        return None
    return TimeWindow(start=earliest - pad, end=latest + pad)

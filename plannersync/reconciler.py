"""Per-activity create/update decision and the conflict ladder.

When the server rejects a write with 409 or 412 the same encoded document is
retried through ``CONFLICT_LADDER``, an ordered tuple of tiers. Each tier
looks at the :class:`ConflictContext` (doing at most one lookup of its own)
and either plans a single write or declines. The ladder runs every tier at
most once and stops at the first 2xx.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from plannersync.dav_transport import DAVResponse, extract_conflict_href, resolve_href
from plannersync.errors import TransportError
from plannersync.ical_codec import encode_activity, storage_name
from plannersync.models import DEFAULT_DURATION, Activity, RemoteIndex, RemoteObject, TierAttempt

logger = logging.getLogger(__name__)

WILDCARD = "*"


class WriteTarget(Protocol):
    def object_url(self, calendar_url: str, uid: str) -> str:
        ...

    def create_object(self, calendar_url: str, uid: str, document: str) -> tuple[str, DAVResponse]:
        ...

    def update_object(self, url: str, document: str, if_match: str | None = None) -> DAVResponse:
        ...

    def fetch_etag(self, url: str) -> str | None:
        ...

    def lookup_by_uid(self, calendar_url: str, uid: str) -> RemoteObject | None:
        ...


@dataclass
class PlannedWrite:
    url: str
    if_match: str | None = None


@dataclass
class ConflictContext:
    """What the ladder knows about one rejected write.

    ``direct_url`` is where tiers 2-4 write: the identifier-derived name on
    the create path, the existing object's location on the update path.
    """

    uid: str
    calendar_url: str
    direct_url: str
    conflict_url: str | None = None
    tried_urls: set[str] = field(default_factory=set)


Tier = Callable[[ConflictContext, WriteTarget], "PlannedWrite | None"]


def tier_conflict_location(ctx: ConflictContext, target: WriteTarget) -> PlannedWrite | None:
    if not ctx.conflict_url:
        return None
    etag = target.fetch_etag(ctx.conflict_url)
    return PlannedWrite(ctx.conflict_url, etag or WILDCARD)


def tier_direct_etag(ctx: ConflictContext, target: WriteTarget) -> PlannedWrite | None:
    if ctx.direct_url in ctx.tried_urls:
        return None
    etag = target.fetch_etag(ctx.direct_url)
    if not etag:
        return None
    return PlannedWrite(ctx.direct_url, etag)


def tier_direct_wildcard(ctx: ConflictContext, target: WriteTarget) -> PlannedWrite | None:
    return PlannedWrite(ctx.direct_url, WILDCARD)


def tier_direct_unconditional(ctx: ConflictContext, target: WriteTarget) -> PlannedWrite | None:
    # No precondition: may overwrite a newer remote version.
    return PlannedWrite(ctx.direct_url, None)


def tier_uid_lookup(ctx: ConflictContext, target: WriteTarget) -> PlannedWrite | None:
    remote = target.lookup_by_uid(ctx.calendar_url, ctx.uid)
    if remote is None:
        return None
    return PlannedWrite(remote.url, remote.etag)


CONFLICT_LADDER: tuple[tuple[str, Tier], ...] = (
    ("conflict_location", tier_conflict_location),
    ("direct_etag", tier_direct_etag),
    ("direct_if_match_any", tier_direct_wildcard),
    ("direct_unconditional", tier_direct_unconditional),
    ("uid_lookup", tier_uid_lookup),
)


def log_response_error(response: DAVResponse, context: str) -> None:
    logger.error(
        "%s: %s %s headers=%s body=%s",
        context,
        response.status,
        response.reason,
        dict(response.headers),
        response.text,
    )


def run_conflict_ladder(
    ctx: ConflictContext,
    document: str,
    target: WriteTarget,
    ladder: tuple[tuple[str, Tier], ...] = CONFLICT_LADDER,
) -> tuple[TierAttempt | None, list[TierAttempt]]:
    attempts: list[TierAttempt] = []
    for number, (name, tier) in enumerate(ladder, start=1):
        attempt = TierAttempt(tier=number, name=name)
        attempts.append(attempt)
        try:
            planned = tier(ctx, target)
            if planned is None:
                attempt.skipped = True
                continue
            attempt.url = planned.url
            attempt.precondition = planned.if_match
            ctx.tried_urls.add(planned.url)
            response = target.update_object(planned.url, document, planned.if_match)
        except TransportError as exc:
            attempt.error = str(exc)
            logger.warning("Tier %d (%s) for %s hit a transport error: %s", number, name, ctx.uid, exc)
            continue
        attempt.status = response.status
        if response.ok:
            return attempt, attempts
        log_response_error(response, f"Tier {number} ({name}) failed for {ctx.uid}")
    return None, attempts


@dataclass
class ReconcileOutcome:
    activity_id: str
    title: str
    action: str
    reason: str
    url: str = ""
    status: int | None = None
    tier: int | None = None
    attempts: list[TierAttempt] = field(default_factory=list)

    @property
    def synced(self) -> bool:
        return self.action in {"created", "updated"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "title": self.title,
            "action": self.action,
            "reason": self.reason,
            "url": self.url,
            "status": self.status,
            "tier": self.tier,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


class Reconciler:
    def __init__(
        self,
        target: WriteTarget,
        calendar_url: str,
        index: RemoteIndex,
        *,
        default_duration: timedelta = DEFAULT_DURATION,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.target = target
        self.calendar_url = calendar_url
        self.index = index
        self.default_duration = default_duration
        self.clock = clock

    def _outcome(self, activity: Activity, action: str, reason: str, **kwargs: Any) -> ReconcileOutcome:
        return ReconcileOutcome(
            activity_id=activity.activity_id,
            title=activity.title,
            action=action,
            reason=reason,
            **kwargs,
        )

    def reconcile(self, activity: Activity) -> ReconcileOutcome:
        if not activity.is_timed:
            return self._outcome(activity, "skipped", "not_timed")
        try:
            document = encode_activity(
                activity,
                now=self.clock() if self.clock else None,
                default_duration=self.default_duration,
            )
        except ValueError as exc:
            logger.error("Could not encode %s (%s): %s", activity.activity_id, activity.title, exc)
            return self._outcome(activity, "failed", "encode_failed")

        existing = self.index.find(storage_name(activity.activity_id), activity.activity_id)
        if existing is None:
            return self._create(activity, document)
        return self._update(activity, document, existing)

    def _create(self, activity: Activity, document: str) -> ReconcileOutcome:
        direct_url = self.target.object_url(self.calendar_url, activity.activity_id)
        try:
            url, response = self.target.create_object(self.calendar_url, activity.activity_id, document)
        except TransportError as exc:
            logger.error("Failed to create %s: %s", activity.title, exc)
            return self._outcome(activity, "failed", "transport_error", url=direct_url)
        if response.ok:
            logger.info("Created event for task: %s", activity.title)
            return self._outcome(activity, "created", "created", url=url, status=response.status)
        # With If-None-Match: * a 412 also means the name is already taken.
        if not (response.is_conflict or response.is_precondition_failed):
            log_response_error(response, f"Failed to create task {activity.title}")
            return self._outcome(activity, "failed", "create_failed", url=url, status=response.status)
        conflict_href = extract_conflict_href(response)
        conflict_url = resolve_href(self.calendar_url, conflict_href) if conflict_href else direct_url
        return self._resolve_conflict(activity, document, direct_url, conflict_url, response)

    def _update(self, activity: Activity, document: str, existing: RemoteObject) -> ReconcileOutcome:
        try:
            response = self.target.update_object(existing.url, document, existing.etag)
        except TransportError as exc:
            logger.error("Failed to update %s: %s", activity.title, exc)
            return self._outcome(activity, "failed", "transport_error", url=existing.url)
        if response.ok:
            logger.info("Updated event for task: %s", activity.title)
            return self._outcome(activity, "updated", "updated", url=existing.url, status=response.status)
        if not (response.is_conflict or response.is_precondition_failed):
            log_response_error(response, f"Failed to update task {activity.title}")
            return self._outcome(activity, "failed", "update_failed", url=existing.url, status=response.status)
        conflict_href = extract_conflict_href(response) if response.is_conflict else None
        conflict_url = resolve_href(self.calendar_url, conflict_href) if conflict_href else existing.url
        # Retries stay on the object already holding this identifier, whatever its name.
        return self._resolve_conflict(activity, document, existing.url, conflict_url, response)

    def _resolve_conflict(
        self,
        activity: Activity,
        document: str,
        direct_url: str,
        conflict_url: str,
        response: DAVResponse,
    ) -> ReconcileOutcome:
        logger.warning(
            "Write for %s rejected with %s, resolving via %s", activity.title, response.status, conflict_url
        )
        ctx = ConflictContext(
            uid=activity.activity_id,
            calendar_url=self.calendar_url,
            direct_url=direct_url,
            conflict_url=conflict_url,
        )
        winner, attempts = run_conflict_ladder(ctx, document, self.target)
        if winner is None:
            logger.error("Task %s left unsynchronized after %d tiers", activity.title, len(attempts))
            return self._outcome(
                activity,
                "failed",
                "conflict_unresolved",
                url=conflict_url,
                status=response.status,
                attempts=attempts,
            )
        logger.info("Updated event for task %s via tier %d (%s)", activity.title, winner.tier, winner.name)
        return self._outcome(
            activity,
            "updated",
            "conflict_resolved",
            url=winner.url,
            status=winner.status,
            tier=winner.tier,
            attempts=attempts,
        )

"""Reconcile a partitioned remote snapshot into local storage.

Order of work per batch:

1. tombstones (delete by ``(feed_id, external_id)``; unknown ids are no-ops),
2. non-recurring events,
3. masters, each followed by its fetched instances.

Every write is an upsert keyed by ``(feed_id, external_event_id, is_master)``
so re-running a batch against the same snapshot changes nothing. Failures of
one item are logged with its external id, recorded in the outcome, and never
abort the rest of the batch.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from calsync.errors import PersistenceError, RecurrenceConversionError, short_error_message
from calsync.models import (
    Attendee,
    CalendarEvent,
    Instance,
    Master,
    NonRecurring,
    RemoteEvent,
    ShowAs,
    parse_remote_datetime,
    parse_remote_timestamp,
)
from calsync.recurrence import RecurrenceConverter
from calsync.repository import EventRepository

logger = logging.getLogger(__name__)

# Storage errors that fail one item without ending the batch.
_ITEM_STORAGE_ERRORS = (PersistenceError, OSError, TimeoutError)


class FailureKind(StrEnum):
    conversion = "conversion"
    invalid_event = "invalid_event"
    persistence = "persistence"


@dataclass(frozen=True)
class ItemFailure:
    external_id: str | None
    kind: FailureKind
    reason: str


@dataclass
class ReconcileOutcome:
    """Counts and identifiers produced by one ``reconcile`` call."""

    processed_external_ids: set[str] = field(default_factory=set)
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[ItemFailure] = field(default_factory=list)

    def record_failure(self, external_id: str | None, kind: FailureKind, reason: str) -> None:
        self.failed += 1
        self.failures.append(ItemFailure(external_id=external_id, kind=kind, reason=reason))


# ---------------------------------------------------------------------------
# Projection: remote shape -> flat persisted record
# ---------------------------------------------------------------------------


def _require_times(event: RemoteEvent) -> tuple[Any, Any]:
    if event.start is None or event.end is None:
        raise ValueError(f"Event {event.id!r} is missing a start or end time")
    start = parse_remote_datetime(event.start)
    end = parse_remote_datetime(event.end)
    if end < start:
        raise ValueError(f"Event {event.id!r} ends before it starts")
    return start, end


def _organizer_snapshot(event: RemoteEvent) -> dict[str, Any] | None:
    if not isinstance(event.organizer, dict):
        return None
    email = event.organizer.get("emailAddress")
    if not isinstance(email, dict):
        return None
    address = email.get("address")
    name = email.get("name")
    if not (isinstance(address, str) and address.strip()):
        return None
    return {
        "email": address.strip(),
        "name": name.strip() if isinstance(name, str) else "",
        "is_self": event.is_organizer,
    }


def _attendees(event: RemoteEvent) -> list[Attendee]:
    attendees: list[Attendee] = []
    for attendee in event.attendees:
        address = attendee.email_address.address.strip()
        if not address:
            continue
        attendees.append(
            Attendee(
                email=address,
                name=attendee.email_address.name.strip(),
                status=attendee.response,
            )
        )
    return attendees


def build_calendar_event(
    feed_id: str,
    event: RemoteEvent,
    *,
    is_master: bool = False,
    recurrence_rule: str | None = None,
    master_event_id: uuid.UUID | None = None,
    recurring_event_id: str | None = None,
) -> CalendarEvent:
    """Project a remote event into the persisted record shape.

    Raises ``ValueError`` (or a pydantic ``ValidationError``) when the
    timestamps are missing or malformed.
    """
    start, end = _require_times(event)
    title = (event.subject or "").strip()
    fields: dict[str, Any] = {}
    if title:
        fields["title"] = title
    return CalendarEvent(
        feed_id=feed_id,
        external_event_id=event.id,
        description=event.body_content or event.body_preview or None,
        location=event.location_name,
        start=start,
        end=end,
        all_day=event.is_all_day,
        is_recurring=is_master or master_event_id is not None,
        is_master=is_master,
        recurrence_rule=recurrence_rule,
        master_event_id=master_event_id,
        recurring_event_id=recurring_event_id,
        status=ShowAs.parse(event.show_as).value,
        organizer=_organizer_snapshot(event),
        attendees=_attendees(event),
        created=parse_remote_timestamp(event.created_date_time),
        last_modified=parse_remote_timestamp(event.last_modified_date_time),
        **fields,
    )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class EventReconciler:
    """Applies one remote snapshot to an ``EventRepository``."""

    def __init__(
        self,
        repository: EventRepository,
        *,
        converter: RecurrenceConverter | None = None,
    ) -> None:
        self._repository = repository
        self._converter = converter or RecurrenceConverter()

    async def reconcile(
        self,
        feed_id: str,
        non_recurring: Sequence[NonRecurring],
        masters: Sequence[Master],
        instances_by_master: Mapping[str, Sequence[Instance]],
        deleted_external_ids: Iterable[str] = (),
    ) -> ReconcileOutcome:
        outcome = ReconcileOutcome()

        for external_id in deleted_external_ids:
            await self._apply_tombstone(feed_id, external_id, outcome)

        for single in non_recurring:
            outcome.processed_external_ids.add(single.external_id)
            try:
                record = build_calendar_event(feed_id, single.event)
            except (ValueError, ValidationError) as exc:
                self._log_failure(feed_id, single.external_id, FailureKind.invalid_event, exc)
                outcome.record_failure(
                    single.external_id, FailureKind.invalid_event, short_error_message(exc)
                )
                continue
            await self._upsert(record, outcome)

        for master in masters:
            await self._reconcile_master(
                feed_id,
                master,
                instances_by_master.get(master.external_id, ()),
                outcome,
            )

        known_masters = {master.external_id for master in masters}
        for master_ref, orphans in instances_by_master.items():
            if master_ref not in known_masters and orphans:
                logger.warning(
                    "Skipping %d instance(s) of unknown master %s in feed %s",
                    len(orphans),
                    master_ref,
                    feed_id,
                )
                outcome.skipped += len(orphans)

        logger.info(
            "Reconciled feed %s: %d processed, %d created, %d updated, %d unchanged, "
            "%d deleted, %d failed, %d skipped",
            feed_id,
            len(outcome.processed_external_ids),
            outcome.created,
            outcome.updated,
            outcome.unchanged,
            outcome.deleted,
            outcome.failed,
            outcome.skipped,
        )
        return outcome

    async def _apply_tombstone(
        self,
        feed_id: str,
        external_id: str,
        outcome: ReconcileOutcome,
    ) -> None:
        try:
            existing = await self._repository.find_event(feed_id, external_id)
            if existing is None or existing.id is None:
                logger.debug("Tombstone for unknown event %s in feed %s", external_id, feed_id)
                return
            outcome.deleted += await self._repository.delete_event(existing.id)
        except _ITEM_STORAGE_ERRORS as exc:
            self._log_failure(feed_id, external_id, FailureKind.persistence, exc)
            outcome.record_failure(external_id, FailureKind.persistence, short_error_message(exc))

    async def _reconcile_master(
        self,
        feed_id: str,
        master: Master,
        instances: Sequence[Instance],
        outcome: ReconcileOutcome,
    ) -> None:
        outcome.processed_external_ids.add(master.external_id)
        try:
            rule = self._converter.validate(self._converter.to_internal_rule(master.recurrence))
        except RecurrenceConversionError as exc:
            self._log_failure(feed_id, master.external_id, FailureKind.conversion, exc)
            outcome.record_failure(
                master.external_id, FailureKind.conversion, short_error_message(exc)
            )
            outcome.skipped += len(instances)
            return

        try:
            record = build_calendar_event(
                feed_id, master.event, is_master=True, recurrence_rule=rule
            )
        except (ValueError, ValidationError) as exc:
            self._log_failure(feed_id, master.external_id, FailureKind.invalid_event, exc)
            outcome.record_failure(
                master.external_id, FailureKind.invalid_event, short_error_message(exc)
            )
            outcome.skipped += len(instances)
            return

        stored_master = await self._upsert(record, outcome)
        if stored_master is None or stored_master.id is None:
            outcome.skipped += len(instances)
            return

        for instance in instances:
            outcome.processed_external_ids.add(instance.external_id)
            if instance.external_id == master.external_id:
                outcome.record_failure(
                    instance.external_id,
                    FailureKind.invalid_event,
                    "Instance shares its external id with the series master",
                )
                continue
            try:
                instance_record = build_calendar_event(
                    feed_id,
                    instance.event,
                    recurrence_rule=rule,
                    master_event_id=stored_master.id,
                    recurring_event_id=master.external_id,
                )
            except (ValueError, ValidationError) as exc:
                self._log_failure(feed_id, instance.external_id, FailureKind.invalid_event, exc)
                outcome.record_failure(
                    instance.external_id, FailureKind.invalid_event, short_error_message(exc)
                )
                continue
            await self._upsert(instance_record, outcome)

    async def _upsert(
        self,
        record: CalendarEvent,
        outcome: ReconcileOutcome,
    ) -> CalendarEvent | None:
        """Write *record* unless the stored row already matches it."""
        try:
            existing = await self._repository.find_event(
                record.feed_id, record.external_event_id, record.is_master
            )
            if existing is not None and existing.mutable_fields() == record.mutable_fields():
                outcome.unchanged += 1
                return existing
            stored = await self._repository.upsert_event(record)
        except _ITEM_STORAGE_ERRORS as exc:
            self._log_failure(
                record.feed_id, record.external_event_id, FailureKind.persistence, exc
            )
            outcome.record_failure(
                record.external_event_id, FailureKind.persistence, short_error_message(exc)
            )
            return None
        if existing is None:
            outcome.created += 1
        else:
            outcome.updated += 1
        return stored

    @staticmethod
    def _log_failure(
        feed_id: str,
        external_id: str | None,
        kind: FailureKind,
        exc: BaseException,
    ) -> None:
        logger.warning(
            "Skipping event %s in feed %s (%s): %s",
            external_id,
            feed_id,
            kind.value,
            short_error_message(exc),
        )

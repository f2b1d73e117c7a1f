"""Storage contracts for mirrored events and feeds, with asyncpg implementations.

Rows are keyed by ``(feed_id, external_event_id, is_master)``. The schema
holds two partial unique indexes (one per ``is_master`` value) and a
self-referencing ``master_event_id`` foreign key with ``ON DELETE CASCADE``.
"""

from __future__ import annotations

import abc
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

import asyncpg

from calsync.errors import PersistenceError
from calsync.models import CalendarEvent, CalendarFeed

logger = logging.getLogger(__name__)

# Server-side failures plus the ways a pooled connection can drop mid-call.
STORAGE_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    TimeoutError,
)


class EventRepository(abc.ABC):
    """Persistence contract consumed by the reconciler and orchestrator."""

    @abc.abstractmethod
    async def find_event(
        self,
        feed_id: str,
        external_id: str,
        is_master: bool | None = None,
    ) -> CalendarEvent | None:
        """Return the row for ``(feed_id, external_id)``.

        With ``is_master=None`` either kind matches; a master row wins when
        both somehow exist.
        """

    @abc.abstractmethod
    async def upsert_event(self, event: CalendarEvent) -> CalendarEvent:
        """Insert or update the row matching ``(feed_id, external_event_id, is_master)``.

        An existing row keeps its internal id. A row of the opposite kind with
        the same external id is removed first so a master and a non-master row
        never share an external id.
        """

    @abc.abstractmethod
    async def delete_event(self, internal_id: uuid.UUID) -> int:
        """Delete one row, and its instances when it is a master. Returns rows removed."""

    @abc.abstractmethod
    async def delete_all_events(self, feed_id: str) -> int:
        """Delete every row of *feed_id*. Returns rows removed."""

    @abc.abstractmethod
    async def list_events(self, feed_id: str) -> list[CalendarEvent]:
        """All rows of *feed_id*, masters first, then by start time."""

    async def count_events(self, feed_id: str) -> int:
        return len(await self.list_events(feed_id))


class FeedRepository(abc.ABC):
    """Storage for ``CalendarFeed`` rows and their sync cursor."""

    @abc.abstractmethod
    async def get_feed(self, feed_id: str) -> CalendarFeed | None: ...

    @abc.abstractmethod
    async def save_feed(self, feed: CalendarFeed) -> CalendarFeed:
        """Create or update a feed's descriptive columns, leaving its cursor untouched."""

    @abc.abstractmethod
    async def list_feeds(self, *, enabled_only: bool = False) -> list[CalendarFeed]: ...

    @abc.abstractmethod
    async def record_sync_success(
        self,
        feed_id: str,
        *,
        sync_token: str | None,
        synced_at: datetime,
    ) -> None:
        """Store the next cursor (``None`` forces a full sync next time) and clear the error."""

    @abc.abstractmethod
    async def record_sync_error(self, feed_id: str, *, error: str) -> None:
        """Record a failed sync without touching the stored cursor."""


# ---------------------------------------------------------------------------
# Row codecs
# ---------------------------------------------------------------------------

_EVENT_COLUMNS = (
    "id, feed_id, external_event_id, title, description, location, starts_at, ends_at, "
    "all_day, is_recurring, is_master, recurrence_rule, master_event_id, "
    "recurring_event_id, status, sequence, organizer, attendees, created_at_remote, "
    "modified_at_remote"
)

_FEED_COLUMNS = "id, calendar_id, name, enabled, sync_token, last_sync_at, last_sync_error"


def _encode_jsonb(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _decode_jsonb(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_event(row: asyncpg.Record | dict[str, Any]) -> CalendarEvent:
    return CalendarEvent(
        id=row["id"],
        feed_id=row["feed_id"],
        external_event_id=row["external_event_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start=row["starts_at"],
        end=row["ends_at"],
        all_day=row["all_day"],
        is_recurring=row["is_recurring"],
        is_master=row["is_master"],
        recurrence_rule=row["recurrence_rule"],
        master_event_id=row["master_event_id"],
        recurring_event_id=row["recurring_event_id"],
        status=row["status"],
        sequence=row["sequence"],
        organizer=_decode_jsonb(row["organizer"]),
        attendees=_decode_jsonb(row["attendees"]) or [],
        created=row["created_at_remote"],
        last_modified=row["modified_at_remote"],
    )


def _row_to_feed(row: asyncpg.Record | dict[str, Any]) -> CalendarFeed:
    return CalendarFeed(
        id=row["id"],
        calendar_id=row["calendar_id"],
        name=row["name"],
        enabled=row["enabled"],
        sync_token=row["sync_token"],
        last_sync_at=row["last_sync_at"],
        last_sync_error=row["last_sync_error"],
    )


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


class PostgresEventRepository(EventRepository):
    """``calendar_events`` access through an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_event(
        self,
        feed_id: str,
        external_id: str,
        is_master: bool | None = None,
    ) -> CalendarEvent | None:
        try:
            if is_master is None:
                row = await self._pool.fetchrow(
                    f"""
                    SELECT {_EVENT_COLUMNS} FROM calendar_events
                    WHERE feed_id = $1 AND external_event_id = $2
                    ORDER BY is_master DESC
                    LIMIT 1
                    """,
                    feed_id,
                    external_id,
                )
            else:
                row = await self._pool.fetchrow(
                    f"""
                    SELECT {_EVENT_COLUMNS} FROM calendar_events
                    WHERE feed_id = $1 AND external_event_id = $2 AND is_master = $3
                    """,
                    feed_id,
                    external_id,
                    is_master,
                )
        except STORAGE_ERRORS as exc:
            raise PersistenceError(f"Lookup of event {external_id!r} failed: {exc}") from exc
        return _row_to_event(row) if row is not None else None

    async def upsert_event(self, event: CalendarEvent) -> CalendarEvent:
        # Conflict target must name the matching partial index predicate.
        predicate = "is_master" if event.is_master else "NOT is_master"
        attendees = [attendee.model_dump() for attendee in event.attendees]
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        DELETE FROM calendar_events
                        WHERE feed_id = $1 AND external_event_id = $2 AND is_master <> $3
                        """,
                        event.feed_id,
                        event.external_event_id,
                        event.is_master,
                    )
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO calendar_events (
                            id, feed_id, external_event_id, title, description, location,
                            starts_at, ends_at, all_day, is_recurring, is_master,
                            recurrence_rule, master_event_id, recurring_event_id, status,
                            sequence, organizer, attendees, created_at_remote,
                            modified_at_remote
                        )
                        VALUES (
                            $1, $2, $3, $4, $5, $6,
                            $7, $8, $9, $10, $11,
                            $12, $13, $14, $15,
                            $16, $17::jsonb, $18::jsonb, $19,
                            $20
                        )
                        ON CONFLICT (feed_id, external_event_id) WHERE {predicate} DO UPDATE SET
                            title = EXCLUDED.title,
                            description = EXCLUDED.description,
                            location = EXCLUDED.location,
                            starts_at = EXCLUDED.starts_at,
                            ends_at = EXCLUDED.ends_at,
                            all_day = EXCLUDED.all_day,
                            is_recurring = EXCLUDED.is_recurring,
                            recurrence_rule = EXCLUDED.recurrence_rule,
                            master_event_id = EXCLUDED.master_event_id,
                            recurring_event_id = EXCLUDED.recurring_event_id,
                            status = EXCLUDED.status,
                            sequence = EXCLUDED.sequence,
                            organizer = EXCLUDED.organizer,
                            attendees = EXCLUDED.attendees,
                            created_at_remote = EXCLUDED.created_at_remote,
                            modified_at_remote = EXCLUDED.modified_at_remote,
                            updated_at = now()
                        RETURNING {_EVENT_COLUMNS}
                        """,
                        event.id or uuid.uuid4(),
                        event.feed_id,
                        event.external_event_id,
                        event.title,
                        event.description,
                        event.location,
                        event.start,
                        event.end,
                        event.all_day,
                        event.is_recurring,
                        event.is_master,
                        event.recurrence_rule,
                        event.master_event_id,
                        event.recurring_event_id,
                        event.status,
                        event.sequence,
                        _encode_jsonb(event.organizer) if event.organizer is not None else None,
                        _encode_jsonb(attendees),
                        event.created,
                        event.last_modified,
                    )
        except STORAGE_ERRORS as exc:
            raise PersistenceError(
                f"Upsert of event {event.external_event_id!r} failed: {exc}"
            ) from exc
        if row is None:
            raise PersistenceError("Event upsert did not return a calendar_events row")
        return _row_to_event(row)

    async def delete_event(self, internal_id: uuid.UUID) -> int:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    instances = await conn.fetch(
                        "DELETE FROM calendar_events WHERE master_event_id = $1 RETURNING id",
                        internal_id,
                    )
                    target = await conn.fetch(
                        "DELETE FROM calendar_events WHERE id = $1 RETURNING id",
                        internal_id,
                    )
        except STORAGE_ERRORS as exc:
            raise PersistenceError(f"Delete of event {internal_id} failed: {exc}") from exc
        return len(instances) + len(target)

    async def delete_all_events(self, feed_id: str) -> int:
        try:
            rows = await self._pool.fetch(
                "DELETE FROM calendar_events WHERE feed_id = $1 RETURNING id",
                feed_id,
            )
        except STORAGE_ERRORS as exc:
            raise PersistenceError(f"Clearing events of feed {feed_id!r} failed: {exc}") from exc
        return len(rows)

    async def list_events(self, feed_id: str) -> list[CalendarEvent]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_EVENT_COLUMNS} FROM calendar_events
            WHERE feed_id = $1
            ORDER BY is_master DESC, starts_at, external_event_id
            """,
            feed_id,
        )
        return [_row_to_event(row) for row in rows]

    async def count_events(self, feed_id: str) -> int:
        value = await self._pool.fetchval(
            "SELECT count(*) FROM calendar_events WHERE feed_id = $1",
            feed_id,
        )
        return int(value or 0)


class PostgresFeedRepository(FeedRepository):
    """``calendar_feeds`` access through an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_feed(self, feed_id: str) -> CalendarFeed | None:
        row = await self._pool.fetchrow(
            f"SELECT {_FEED_COLUMNS} FROM calendar_feeds WHERE id = $1",
            feed_id,
        )
        return _row_to_feed(row) if row is not None else None

    async def save_feed(self, feed: CalendarFeed) -> CalendarFeed:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO calendar_feeds (id, calendar_id, name, enabled)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET
                calendar_id = EXCLUDED.calendar_id,
                name = EXCLUDED.name,
                enabled = EXCLUDED.enabled,
                updated_at = now()
            RETURNING {_FEED_COLUMNS}
            """,
            feed.id,
            feed.calendar_id,
            feed.name,
            feed.enabled,
        )
        if row is None:
            raise PersistenceError("Feed upsert did not return a calendar_feeds row")
        return _row_to_feed(row)

    async def list_feeds(self, *, enabled_only: bool = False) -> list[CalendarFeed]:
        if enabled_only:
            rows = await self._pool.fetch(
                f"SELECT {_FEED_COLUMNS} FROM calendar_feeds WHERE enabled ORDER BY id"
            )
        else:
            rows = await self._pool.fetch(f"SELECT {_FEED_COLUMNS} FROM calendar_feeds ORDER BY id")
        return [_row_to_feed(row) for row in rows]

    async def record_sync_success(
        self,
        feed_id: str,
        *,
        sync_token: str | None,
        synced_at: datetime,
    ) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_feeds
            SET sync_token = $2,
                last_sync_at = $3,
                last_sync_error = NULL,
                updated_at = now()
            WHERE id = $1
            """,
            feed_id,
            sync_token,
            synced_at.astimezone(UTC),
        )

    async def record_sync_error(self, feed_id: str, *, error: str) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_feeds
            SET last_sync_error = $2,
                updated_at = now()
            WHERE id = $1
            """,
            feed_id,
            error,
        )

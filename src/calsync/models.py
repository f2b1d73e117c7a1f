"""Data model for calendar synchronization.

Three layers live here:

- closed vocabularies (``StrEnum``) for both the internal rule grammar and the
  provider's native recurrence/status strings,
- provider-shaped, transient ``RemoteEvent`` models parsed from raw page items,
- the persisted ``CalendarEvent`` record and the ``CalendarFeed`` it belongs to.

Between the remote and persisted layers sits a small tagged union
(``NonRecurring | Master | Instance``) produced when a fetch result is
partitioned, so that "a master carries a recurrence descriptor" and "an
instance references its master" hold by construction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_EVENT_TITLE = "Untitled Event"

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------


class Frequency(StrEnum):
    """FREQ values of the internal rule grammar."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class PatternType(StrEnum):
    """Provider recurrence pattern types."""

    daily = "daily"
    weekly = "weekly"
    absolute_monthly = "absoluteMonthly"
    relative_monthly = "relativeMonthly"
    absolute_yearly = "absoluteYearly"
    relative_yearly = "relativeYearly"

    @classmethod
    def parse(cls, value: str) -> PatternType:
        """Case-insensitive lookup; raises ``ValueError`` for unknown types."""
        normalized = value.strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"Unknown recurrence pattern type: {value!r}")

    @property
    def is_relative(self) -> bool:
        return self in (PatternType.relative_monthly, PatternType.relative_yearly)


class RangeType(StrEnum):
    """Provider recurrence range types."""

    end_date = "endDate"
    no_end = "noEnd"
    numbered = "numbered"

    @classmethod
    def parse(cls, value: str) -> RangeType:
        normalized = value.strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"Unknown recurrence range type: {value!r}")


class DayOfWeek(StrEnum):
    """Provider weekday names, each mapped to its two-letter rule code."""

    sunday = "sunday"
    monday = "monday"
    tuesday = "tuesday"
    wednesday = "wednesday"
    thursday = "thursday"
    friday = "friday"
    saturday = "saturday"

    @property
    def code(self) -> str:
        return _DAY_TO_CODE[self]

    @classmethod
    def parse(cls, value: str) -> DayOfWeek:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown day of week: {value!r}") from None

    @classmethod
    def from_code(cls, code: str) -> DayOfWeek:
        try:
            return _CODE_TO_DAY[code.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown weekday code: {code!r}") from None


_DAY_TO_CODE: dict[DayOfWeek, str] = {
    DayOfWeek.sunday: "SU",
    DayOfWeek.monday: "MO",
    DayOfWeek.tuesday: "TU",
    DayOfWeek.wednesday: "WE",
    DayOfWeek.thursday: "TH",
    DayOfWeek.friday: "FR",
    DayOfWeek.saturday: "SA",
}
_CODE_TO_DAY: dict[str, DayOfWeek] = {code: day for day, code in _DAY_TO_CODE.items()}


class WeekIndex(StrEnum):
    """Ordinal position of a weekday within a month, as named by the provider."""

    first = "first"
    second = "second"
    third = "third"
    fourth = "fourth"
    last = "last"

    @property
    def ordinal(self) -> int:
        return _INDEX_TO_ORDINAL[self]

    @classmethod
    def parse(cls, value: str) -> WeekIndex:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown week index: {value!r}") from None

    @classmethod
    def from_ordinal(cls, ordinal: int) -> WeekIndex:
        try:
            return _ORDINAL_TO_INDEX[ordinal]
        except KeyError:
            raise ValueError(f"Unsupported weekday ordinal: {ordinal}") from None


_INDEX_TO_ORDINAL: dict[WeekIndex, int] = {
    WeekIndex.first: 1,
    WeekIndex.second: 2,
    WeekIndex.third: 3,
    WeekIndex.fourth: 4,
    WeekIndex.last: -1,
}
_ORDINAL_TO_INDEX: dict[int, WeekIndex] = {
    ordinal: index for index, ordinal in _INDEX_TO_ORDINAL.items()
}


class ShowAs(StrEnum):
    """Provider free/busy status, persisted as the event status."""

    free = "free"
    tentative = "tentative"
    busy = "busy"
    oof = "oof"
    working_elsewhere = "workingElsewhere"
    unknown = "unknown"

    @classmethod
    def parse(cls, value: Any) -> ShowAs:
        """Lenient lookup; anything unrecognised reads as ``busy``."""
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value.lower() == normalized:
                    return member
        return cls.busy


class AttendeeResponse(StrEnum):
    """Attendee RSVP state as reported by the provider."""

    none = "none"
    organizer = "organizer"
    tentatively_accepted = "tentativelyAccepted"
    accepted = "accepted"
    declined = "declined"
    not_responded = "notResponded"


# ---------------------------------------------------------------------------
# Provider-shaped (transient) models
# ---------------------------------------------------------------------------


class _RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RemoteDateTime(_RemoteModel):
    date_time: str = Field(alias="dateTime")
    time_zone: str = Field(default="UTC", alias="timeZone")


class RemoteEmailAddress(_RemoteModel):
    address: str = ""
    name: str = ""


class RemoteAttendee(_RemoteModel):
    email_address: RemoteEmailAddress = Field(
        default_factory=RemoteEmailAddress, alias="emailAddress"
    )
    status: dict[str, Any] = Field(default_factory=dict)
    type: str | None = None

    @property
    def response(self) -> str:
        response = self.status.get("response")
        if isinstance(response, str) and response.strip():
            return response.strip()
        return AttendeeResponse.none.value


class RecurrencePattern(_RemoteModel):
    """Native recurrence pattern. ``type`` stays a string so unknown values
    surface as a per-event conversion failure rather than a parse failure."""

    type: str
    interval: int = Field(default=1, ge=1)
    month: int | None = None
    day_of_month: int | None = Field(default=None, alias="dayOfMonth")
    days_of_week: list[str] = Field(default_factory=list, alias="daysOfWeek")
    first_day_of_week: str | None = Field(default=None, alias="firstDayOfWeek")
    index: str | None = None

    @field_validator("interval", mode="before")
    @classmethod
    def _absent_interval_is_one(cls, value: Any) -> Any:
        if value is None or value == 0:
            return 1
        return value

    @field_validator("month", "day_of_month", mode="before")
    @classmethod
    def _zero_means_absent(cls, value: Any) -> Any:
        if value == 0:
            return None
        return value

    @field_validator("days_of_week", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class RecurrenceRange(_RemoteModel):
    type: str = RangeType.no_end.value
    start_date: str | None = Field(default=None, alias="startDate")
    end_date: str | None = Field(default=None, alias="endDate")
    number_of_occurrences: int | None = Field(default=None, alias="numberOfOccurrences")
    recurrence_time_zone: str | None = Field(default=None, alias="recurrenceTimeZone")

    @field_validator("number_of_occurrences", mode="before")
    @classmethod
    def _zero_means_absent(cls, value: Any) -> Any:
        if value == 0:
            return None
        return value

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _blank_or_sentinel_is_absent(cls, value: Any) -> Any:
        # The provider fills unused dates with "0001-01-01".
        if isinstance(value, str) and (not value.strip() or value.startswith("0001-01-01")):
            return None
        return value


class Recurrence(_RemoteModel):
    pattern: RecurrencePattern
    range: RecurrenceRange = Field(default_factory=RecurrenceRange)


class RemoteEvent(_RemoteModel):
    """One provider event item as returned by a page fetch."""

    id: str = Field(min_length=1)
    subject: str | None = None
    body: dict[str, Any] | None = None
    body_preview: str | None = Field(default=None, alias="bodyPreview")
    start: RemoteDateTime | None = None
    end: RemoteDateTime | None = None
    location: dict[str, Any] | None = None
    is_all_day: bool = Field(default=False, alias="isAllDay")
    recurrence: Recurrence | None = None
    series_master_id: str | None = Field(default=None, alias="seriesMasterId")
    type: str | None = None
    show_as: str | None = Field(default=None, alias="showAs")
    created_date_time: str | None = Field(default=None, alias="createdDateTime")
    last_modified_date_time: str | None = Field(default=None, alias="lastModifiedDateTime")
    is_organizer: bool = Field(default=False, alias="isOrganizer")
    organizer: dict[str, Any] | None = None
    attendees: list[RemoteAttendee] = Field(default_factory=list)

    @field_validator("attendees", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def body_content(self) -> str | None:
        if isinstance(self.body, dict):
            content = self.body.get("content")
            if isinstance(content, str) and content:
                return content
        return None

    @property
    def location_name(self) -> str | None:
        if isinstance(self.location, dict):
            name = self.location.get("displayName")
            if isinstance(name, str) and name.strip():
                return name
        return None

    @property
    def organizer_email(self) -> str | None:
        if not isinstance(self.organizer, dict):
            return None
        email = self.organizer.get("emailAddress")
        if isinstance(email, dict):
            address = email.get("address")
            if isinstance(address, str) and address.strip():
                return address.strip()
        return None


# ---------------------------------------------------------------------------
# Partition union
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NonRecurring:
    """A standalone event: no recurrence descriptor and no series master."""

    event: RemoteEvent

    @property
    def external_id(self) -> str:
        return self.event.id


@dataclass(frozen=True)
class Master:
    """The canonical definition of a recurring series."""

    event: RemoteEvent
    recurrence: Recurrence

    def __post_init__(self) -> None:
        if self.event.recurrence is None:
            raise ValueError(f"Master event {self.event.id!r} carries no recurrence descriptor")

    @classmethod
    def from_event(cls, event: RemoteEvent) -> Master:
        if event.recurrence is None:
            raise ValueError(f"Master event {event.id!r} carries no recurrence descriptor")
        return cls(event=event, recurrence=event.recurrence)

    @property
    def external_id(self) -> str:
        return self.event.id


@dataclass(frozen=True)
class Instance:
    """One concrete occurrence of a series, referencing its master's external id."""

    event: RemoteEvent
    master_ref: str

    def __post_init__(self) -> None:
        if not self.master_ref:
            raise ValueError(f"Instance {self.event.id!r} has an empty master reference")

    @property
    def external_id(self) -> str:
        return self.event.id


RemoteEventShape = NonRecurring | Master | Instance


def classify_event(event: RemoteEvent) -> RemoteEventShape:
    """Place *event* into exactly one branch of the partition union.

    A recurrence descriptor wins over a series-master reference: exception
    occurrences never carry a pattern, so an item with both is a master.
    """
    if event.recurrence is not None:
        return Master.from_event(event)
    if event.series_master_id:
        return Instance(event=event, master_ref=event.series_master_id)
    return NonRecurring(event=event)


# ---------------------------------------------------------------------------
# Persisted models
# ---------------------------------------------------------------------------


class Attendee(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    name: str = ""
    status: str = AttendeeResponse.none.value


class CalendarEvent(BaseModel):
    """The persisted, flat event record. ``start``/``end`` are always UTC."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID | None = None
    feed_id: str
    external_event_id: str
    title: str = DEFAULT_EVENT_TITLE
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    all_day: bool = False
    is_recurring: bool = False
    is_master: bool = False
    recurrence_rule: str | None = None
    master_event_id: uuid.UUID | None = None
    recurring_event_id: str | None = None
    status: str = ShowAs.busy.value
    sequence: int = 0
    organizer: dict[str, Any] | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    created: datetime | None = None
    last_modified: datetime | None = None

    @field_validator("start", "end", "created", "last_modified")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def mutable_fields(self) -> dict[str, Any]:
        """Fields an update is allowed to overwrite (identity columns excluded)."""
        return self.model_dump(exclude={"id", "feed_id", "external_event_id", "is_master"})


class CalendarFeed(BaseModel):
    """A mirrored remote calendar and its stored sync cursor."""

    model_config = ConfigDict(extra="ignore")

    id: str
    calendar_id: str
    name: str = ""
    enabled: bool = True
    sync_token: str | None = None
    last_sync_at: datetime | None = None
    last_sync_error: str | None = None


@dataclass(frozen=True)
class TimeWindow:
    """Half-open occurrence window bounding full fetches and instance expansion."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("TimeWindow end must be after start")

    @classmethod
    def around(
        cls,
        now: datetime,
        *,
        days_back: int = 365,
        days_forward: int = 365,
    ) -> TimeWindow:
        anchor = now if now.tzinfo is not None else now.replace(tzinfo=UTC)
        return cls(
            start=anchor - timedelta(days=days_back),
            end=anchor + timedelta(days=days_forward),
        )


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def parse_remote_datetime(value: RemoteDateTime) -> datetime:
    """Convert a provider ``{dateTime, timeZone}`` pair into an aware UTC datetime.

    Naive wall-clock values are interpreted in ``timeZone``; zones the
    interpreter does not know fall back to UTC. Malformed values raise
    ``ValueError``.
    """
    raw = value.date_time.strip()
    if not raw:
        raise ValueError("Remote event is missing a dateTime value")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"Remote event has an invalid dateTime: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_coerce_zoneinfo(value.time_zone) or UTC)
    return parsed.astimezone(UTC)


def parse_remote_timestamp(value: str | None) -> datetime | None:
    """Parse an optional ISO-8601 audit timestamp, returning None when absent or invalid."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def parse_iso_date(value: str) -> date:
    """Parse ``YYYY-MM-DD`` (optionally followed by a time part)."""
    return date.fromisoformat(value.strip()[:10])

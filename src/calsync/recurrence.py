"""Bidirectional translation between native recurrence patterns and rule strings.

The internal grammar is an iCalendar-style rule line::

    RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE;UNTIL=20261231T235959Z;DTSTART=20260105T000000Z

The provider side is a ``{pattern, range}`` pair (see ``calsync.models.Recurrence``).
Every function here is pure: no I/O, and the "today" used for a missing
range start date is an explicit argument.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from typing import Any

from dateutil.rrule import rrule, rrulestr
from pydantic import ValidationError

from calsync.errors import RecurrenceConversionError
from calsync.models import (
    DayOfWeek,
    Frequency,
    PatternType,
    RangeType,
    Recurrence,
    RecurrencePattern,
    RecurrenceRange,
    TimeWindow,
    WeekIndex,
    parse_iso_date,
)

RULE_PREFIX = "RRULE:"
RULE_TOKENS = (
    "FREQ",
    "INTERVAL",
    "BYDAY",
    "BYMONTHDAY",
    "BYMONTH",
    "COUNT",
    "UNTIL",
    "DTSTART",
    "WKST",
)
# Tokens that carry recurrence semantics; DTSTART and WKST only anchor it.
SEMANTIC_TOKENS = ("FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYMONTH", "COUNT", "UNTIL")
DEFAULT_EXPANSION_LIMIT = 1000

_PATTERN_TO_FREQUENCY: dict[PatternType, Frequency] = {
    PatternType.daily: Frequency.DAILY,
    PatternType.weekly: Frequency.WEEKLY,
    PatternType.absolute_monthly: Frequency.MONTHLY,
    PatternType.relative_monthly: Frequency.MONTHLY,
    PatternType.absolute_yearly: Frequency.YEARLY,
    PatternType.relative_yearly: Frequency.YEARLY,
}

# (frequency, has ordinal BYDAY) -> pattern type
_FREQUENCY_TO_PATTERN: dict[tuple[Frequency, bool], PatternType] = {
    (Frequency.DAILY, False): PatternType.daily,
    (Frequency.WEEKLY, False): PatternType.weekly,
    (Frequency.MONTHLY, False): PatternType.absolute_monthly,
    (Frequency.MONTHLY, True): PatternType.relative_monthly,
    (Frequency.YEARLY, False): PatternType.absolute_yearly,
    (Frequency.YEARLY, True): PatternType.relative_yearly,
}

_BYDAY_TOKEN = re.compile(r"^([+-]?\d{1,2})?(SU|MO|TU|WE|TH|FR|SA)$")
_RULE_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2})(Z)?)?$")
# (token, largest magnitude, negative values allowed)
_BOUNDED_TOKENS = (("BYMONTH", 12, False), ("BYMONTHDAY", 31, True))


def _utc_today() -> date:
    return datetime.now(UTC).date()


def _compact_date(value: date) -> str:
    return value.strftime("%Y%m%d")


# ---------------------------------------------------------------------------
# Native pattern -> rule
# ---------------------------------------------------------------------------


def _coerce_recurrence(recurrence: Recurrence | Mapping[str, Any]) -> Recurrence:
    if isinstance(recurrence, Recurrence):
        return recurrence
    try:
        return Recurrence.model_validate(recurrence)
    except ValidationError as exc:
        raise RecurrenceConversionError(f"Malformed recurrence descriptor: {exc}") from exc


def to_internal_rule(
    recurrence: Recurrence | Mapping[str, Any],
    *,
    today: date | None = None,
) -> str:
    """Convert a native ``{pattern, range}`` descriptor into a rule string.

    Parameters
    ----------
    recurrence:
        The provider's recurrence descriptor, as a model or a raw mapping.
    today:
        Reference date used as DTSTART when the range has no start date.
        Defaults to the current UTC date.

    Raises
    ------
    RecurrenceConversionError
        On an unknown pattern type, range type, weekday or week index, or
        on a malformed range date.
    """
    native = _coerce_recurrence(recurrence)
    pattern = native.pattern
    span = native.range

    try:
        pattern_type = PatternType.parse(pattern.type)
        range_type = RangeType.parse(span.type)
        days = [DayOfWeek.parse(day) for day in pattern.days_of_week]
        index: WeekIndex | None = None
        if pattern_type.is_relative and days:
            # The provider treats a missing index as "first".
            index = WeekIndex.parse(pattern.index) if pattern.index else WeekIndex.first
        start_date = parse_iso_date(span.start_date) if span.start_date else None
        end_date = parse_iso_date(span.end_date) if span.end_date else None
    except ValueError as exc:
        raise RecurrenceConversionError(str(exc)) from exc

    parts = [
        f"FREQ={_PATTERN_TO_FREQUENCY[pattern_type].value}",
        f"INTERVAL={pattern.interval}",
    ]

    if days:
        prefix = str(index.ordinal) if index is not None else ""
        parts.append("BYDAY=" + ",".join(f"{prefix}{day.code}" for day in days))

    context = f"{pattern.type} pattern"
    if pattern.day_of_month:
        _check_bounded("BYMONTHDAY", str(pattern.day_of_month), 31, True, context)
        parts.append(f"BYMONTHDAY={pattern.day_of_month}")

    if pattern.month:
        _check_bounded("BYMONTH", str(pattern.month), 12, False, context)
        parts.append(f"BYMONTH={pattern.month}")

    if range_type is RangeType.numbered and span.number_of_occurrences:
        parts.append(f"COUNT={span.number_of_occurrences}")
    elif range_type is RangeType.end_date and end_date is not None:
        # Inclusive: the whole end day counts.
        parts.append(f"UNTIL={_compact_date(end_date)}T235959Z")

    anchor = start_date or today or _utc_today()
    parts.append(f"DTSTART={_compact_date(anchor)}T000000Z")

    return RULE_PREFIX + ";".join(parts)


# ---------------------------------------------------------------------------
# Rule -> native pattern
# ---------------------------------------------------------------------------


def parse_rule(rule: str) -> dict[str, str]:
    """Split a rule string into its token map.

    Accepts an optional ``RRULE:`` prefix. Token names are upper-cased and
    must belong to the supported grammar; FREQ is mandatory.
    """
    if not isinstance(rule, str) or not rule.strip():
        raise RecurrenceConversionError("Recurrence rule is empty")

    body = rule.strip()
    if body.upper().startswith(RULE_PREFIX):
        body = body[len(RULE_PREFIX) :]

    tokens: dict[str, str] = {}
    for part in body.split(";"):
        part = part.strip()
        if not part:
            continue
        name, sep, value = part.partition("=")
        name = name.strip().upper()
        value = value.strip()
        if not sep or not value:
            raise RecurrenceConversionError(f"Malformed rule token {part!r} in {rule!r}")
        if name not in RULE_TOKENS:
            raise RecurrenceConversionError(f"Unsupported rule token {name!r} in {rule!r}")
        if name in tokens:
            raise RecurrenceConversionError(f"Duplicate rule token {name!r} in {rule!r}")
        tokens[name] = value.upper()

    freq = tokens.get("FREQ")
    if freq is None:
        raise RecurrenceConversionError(f"Recurrence rule has no FREQ: {rule!r}")
    if freq not in Frequency.__members__:
        raise RecurrenceConversionError(f"Unsupported frequency {freq!r} in {rule!r}")

    for numeric in ("INTERVAL", "COUNT"):
        if numeric in tokens:
            value = tokens[numeric]
            if not value.isdigit() or int(value) < 1:
                raise RecurrenceConversionError(f"{numeric} must be a positive integer: {rule!r}")

    if "COUNT" in tokens and "UNTIL" in tokens:
        raise RecurrenceConversionError(f"COUNT and UNTIL are mutually exclusive: {rule!r}")

    for dated in ("UNTIL", "DTSTART"):
        if dated in tokens and _RULE_DATE.match(tokens[dated]) is None:
            raise RecurrenceConversionError(f"Malformed {dated} value in {rule!r}")

    for name, limit, signed in _BOUNDED_TOKENS:
        if name in tokens:
            _check_bounded(name, tokens[name], limit, signed, rule)

    return tokens


def _check_bounded(name: str, value: str, limit: int, signed: bool, rule: str) -> None:
    for raw in value.split(","):
        try:
            number = int(raw)
        except ValueError as exc:
            raise RecurrenceConversionError(f"{name} must be an integer: {rule!r}") from exc
        magnitude = abs(number) if signed else number
        if not 1 <= magnitude <= limit:
            raise RecurrenceConversionError(f"{name}={raw} is out of range in {rule!r}")


def _rule_date_to_iso(value: str) -> str:
    """``YYYYMMDD[THHMMSSZ]`` -> ``YYYY-MM-DD``."""
    match = _RULE_DATE.match(value)
    if match is None:
        raise RecurrenceConversionError(f"Malformed rule date: {value!r}")
    year, month, day = match.group(1), match.group(2), match.group(3)
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError as exc:
        raise RecurrenceConversionError(f"Invalid rule date: {value!r}") from exc


def _parse_byday(value: str) -> tuple[list[DayOfWeek], int | None]:
    days: list[DayOfWeek] = []
    ordinals: set[int | None] = set()
    for raw in value.split(","):
        match = _BYDAY_TOKEN.match(raw.strip())
        if match is None:
            raise RecurrenceConversionError(f"Malformed BYDAY entry: {raw!r}")
        ordinal_raw, code = match.groups()
        ordinals.add(int(ordinal_raw) if ordinal_raw else None)
        days.append(DayOfWeek.from_code(code))
    if len(ordinals) > 1:
        raise RecurrenceConversionError(f"Mixed BYDAY ordinals are not representable: {value!r}")
    return days, ordinals.pop()


def _single_int(name: str, value: str) -> int:
    if "," in value:
        raise RecurrenceConversionError(f"Multiple {name} values are not representable: {value!r}")
    try:
        return int(value)
    except ValueError as exc:
        raise RecurrenceConversionError(f"{name} must be an integer: {value!r}") from exc


def to_native_pattern(rule: str) -> Recurrence:
    """Convert a rule string into the provider's ``{pattern, range}`` shape.

    Raises
    ------
    RecurrenceConversionError
        When the rule does not parse or uses a construct the provider cannot
        express (several BYMONTHDAY values, mixed weekday ordinals, ordinals
        on DAILY/WEEKLY rules).
    """
    tokens = parse_rule(rule)
    frequency = Frequency(tokens["FREQ"])

    days: list[DayOfWeek] = []
    ordinal: int | None = None
    if "BYDAY" in tokens:
        days, ordinal = _parse_byday(tokens["BYDAY"])

    pattern_type = _FREQUENCY_TO_PATTERN.get((frequency, ordinal is not None))
    if pattern_type is None:
        raise RecurrenceConversionError(
            f"Weekday ordinals are not supported for {frequency.value} rules: {rule!r}"
        )

    try:
        index = WeekIndex.from_ordinal(ordinal) if ordinal is not None else None
    except ValueError as exc:
        raise RecurrenceConversionError(str(exc)) from exc

    first_day_of_week: str | None = None
    if "WKST" in tokens:
        try:
            first_day_of_week = DayOfWeek.from_code(tokens["WKST"]).value
        except ValueError as exc:
            raise RecurrenceConversionError(str(exc)) from exc

    pattern = RecurrencePattern(
        type=pattern_type.value,
        interval=int(tokens.get("INTERVAL", "1")),
        days_of_week=[day.value for day in days],
        day_of_month=(
            _single_int("BYMONTHDAY", tokens["BYMONTHDAY"]) if "BYMONTHDAY" in tokens else None
        ),
        month=_single_int("BYMONTH", tokens["BYMONTH"]) if "BYMONTH" in tokens else None,
        first_day_of_week=first_day_of_week,
        index=index.value if index is not None else None,
    )

    start_date = _rule_date_to_iso(tokens["DTSTART"]) if "DTSTART" in tokens else None
    if "COUNT" in tokens:
        span = RecurrenceRange(
            type=RangeType.numbered.value,
            start_date=start_date,
            number_of_occurrences=int(tokens["COUNT"]),
        )
    elif "UNTIL" in tokens:
        span = RecurrenceRange(
            type=RangeType.end_date.value,
            start_date=start_date,
            end_date=_rule_date_to_iso(tokens["UNTIL"]),
        )
    else:
        span = RecurrenceRange(type=RangeType.no_end.value, start_date=start_date)

    return Recurrence(pattern=pattern, range=span)


# ---------------------------------------------------------------------------
# Validation, comparison, expansion
# ---------------------------------------------------------------------------


def _parse_rule_datetime(value: str) -> datetime:
    match = _RULE_DATE.match(value)
    if match is None:
        raise RecurrenceConversionError(f"Malformed rule date: {value!r}")
    year, month, day, hour, minute, second, zulu = match.groups()
    try:
        parsed = datetime(
            int(year),
            int(month),
            int(day),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
        )
    except ValueError as exc:
        raise RecurrenceConversionError(f"Invalid rule date: {value!r}") from exc
    return parsed.replace(tzinfo=UTC) if zulu or hour is None else parsed


def _build_rrule(
    tokens: Mapping[str, str],
    dtstart: datetime | None = None,
) -> tuple[rrule, datetime]:
    if dtstart is None:
        if "DTSTART" in tokens:
            dtstart = _parse_rule_datetime(tokens["DTSTART"])
        else:
            dtstart = datetime(2000, 1, 1, tzinfo=UTC)
    until = tokens.get("UNTIL")
    # dateutil requires UNTIL and DTSTART to agree on awareness.
    if until is not None and not until.upper().endswith("Z"):
        dtstart = dtstart.replace(tzinfo=None)
    elif until is not None and dtstart.tzinfo is None:
        dtstart = dtstart.replace(tzinfo=UTC)
    body = ";".join(f"{name}={value}" for name, value in tokens.items() if name != "DTSTART")
    try:
        return rrulestr(RULE_PREFIX + body, dtstart=dtstart), dtstart
    except (ValueError, TypeError) as exc:
        raise RecurrenceConversionError(f"Recurrence rule rejected by parser: {exc}") from exc


def validate_rule(rule: str) -> str:
    """Return *rule* unchanged if it parses and can be expanded, else raise."""
    _build_rrule(parse_rule(rule))
    return rule


def semantic_tokens(rule: str) -> dict[str, str]:
    """Token map restricted to semantic tokens, with defaults and BYDAY order normalised."""
    tokens = parse_rule(rule)
    normalized = {name: tokens[name] for name in SEMANTIC_TOKENS if name in tokens}
    normalized.setdefault("INTERVAL", "1")
    if "BYDAY" in normalized:
        normalized["BYDAY"] = ",".join(sorted(normalized["BYDAY"].split(",")))
    return normalized


def rules_equivalent(left: str, right: str) -> bool:
    """True when both rules describe the same recurrence (DTSTART/WKST ignored)."""
    return semantic_tokens(left) == semantic_tokens(right)


def expand_rule(
    rule: str,
    *,
    window: TimeWindow,
    dtstart: datetime | None = None,
    limit: int = DEFAULT_EXPANSION_LIMIT,
) -> list[datetime]:
    """List occurrence starts of *rule* that fall inside *window*."""
    tokens = parse_rule(rule)
    expanded, anchor = _build_rrule(tokens, dtstart=dtstart)
    start, end = window.start, window.end
    if anchor.tzinfo is None:
        start = start.astimezone(UTC).replace(tzinfo=None)
        end = end.astimezone(UTC).replace(tzinfo=None)
    occurrences: list[datetime] = []
    for occurrence in expanded.xafter(start, inc=True):
        if occurrence >= end or len(occurrences) >= limit:
            break
        occurrences.append(occurrence)
    return occurrences


class RecurrenceConverter:
    """Stateless converter facade with an injectable clock for the DTSTART default."""

    def __init__(self, *, clock: Callable[[], date] | None = None) -> None:
        self._clock = clock or _utc_today

    def to_internal_rule(
        self,
        recurrence: Recurrence | Mapping[str, Any],
        *,
        today: date | None = None,
    ) -> str:
        return to_internal_rule(recurrence, today=today or self._clock())

    def to_native_pattern(self, rule: str) -> Recurrence:
        return to_native_pattern(rule)

    def validate(self, rule: str) -> str:
        return validate_rule(rule)

"""
Schedule calculator.

Two schedule kinds are supported:

- ``IntervalSchedule``: every N seconds/minutes/hours/days/months/years,
  optionally anchored at ``start_at``. Seconds, minutes and hours are
  absolute durations. Days, months and years are calendar steps applied to
  the wall-clock time in the schedule's timezone, so "every 1 day at 09:00"
  stays at 09:00 across DST changes and "every 1 month" keeps the day of month.
- ``CronSchedule``: a cron expression evaluated with croniter in the
  schedule's timezone.

Both kinds serialize into one compact string for storage:
``B=<every> <s|m|h|d|mo|y>[ <start_at ms>]`` and ``C=<cron>[|<start_at ms>]``.
"""

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from pgqueue.constants import DEFAULT_TIMEZONE
from pgqueue.errors import InvalidScheduleError

Granularity = Literal["seconds", "minutes", "hours", "days", "months", "years"]

ABSOLUTE_UNITS = ("seconds", "minutes", "hours")

UNIT_KEYS: dict[str, str] = {
    "seconds": "s",
    "minutes": "m",
    "hours": "h",
    "days": "d",
    "months": "mo",
    "years": "y",
}
KEY_UNITS = {key: unit for unit, key in UNIT_KEYS.items()}

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

DEFAULT_SIMULATION_COUNT = 10


def normalize_instant(value: datetime | None) -> datetime | None:
    """UTC, millisecond precision. Naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def to_epoch_ms(value: datetime) -> int:
    return (value - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


class IntervalSchedule(BaseModel):
    """Fixed interval schedule."""

    model_config = ConfigDict(frozen=True)

    type: Literal["interval"] = "interval"
    every: int = Field(gt=0)
    unit: Granularity
    start_at: datetime | None = None

    normalize_start = field_validator("start_at")(normalize_instant)


class CronSchedule(BaseModel):
    """Cron expression schedule."""

    model_config = ConfigDict(frozen=True)

    type: Literal["cron"] = "cron"
    cron: str
    start_at: datetime | None = None

    normalize_start = field_validator("start_at")(normalize_instant)

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        value = value.strip()
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value}")
        return value


Schedule = Annotated[IntervalSchedule | CronSchedule, Field(discriminator="type")]

_schedule_adapter: TypeAdapter[IntervalSchedule | CronSchedule] = TypeAdapter(Schedule)


class ScheduleSimulation(BaseModel):
    """Preview of upcoming trigger instants."""

    granularity: Granularity
    runs: list[datetime]


def parse_schedule(value: "IntervalSchedule | CronSchedule | str | Mapping[str, Any]") -> IntervalSchedule | CronSchedule:
    """
    Accept a schedule model, a mapping, a serialized string or a bare cron expression.

    Raises:
        InvalidScheduleError: If the value does not describe a valid schedule.
    """
    if isinstance(value, IntervalSchedule | CronSchedule):
        return value
    if isinstance(value, str):
        if value.startswith(("B=", "C=")):
            return deserialize(value)
        value = {"type": "cron", "cron": value}
    try:
        return _schedule_adapter.validate_python(value)
    except ValidationError as e:
        raise InvalidScheduleError(str(e)) from e


def validate_timezone(timezone: str | None) -> None:
    """
    Check that a timezone name is a known IANA zone.

    Raises:
        InvalidScheduleError: If the timezone is unknown.
    """
    if timezone:
        get_zone(timezone)


def get_zone(timezone: str | None) -> ZoneInfo:
    name = timezone or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScheduleError(f"Invalid timezone: {name}") from e


def next_run(
    schedule: IntervalSchedule | CronSchedule,
    timezone: str | None = None,
    after: datetime | None = None,
) -> datetime:
    """
    Compute the next trigger instant in UTC.

    Args:
        schedule: The schedule definition.
        timezone: IANA timezone for calendar math, UTC when omitted.
        after: Reference instant. The result is strictly later than it.
            When omitted, the schedule's ``start_at`` (or now) is the base.

    Returns:
        The next trigger instant, timezone-aware in UTC.
    """
    tz = get_zone(timezone)
    after = normalize_instant(after)

    match schedule.type:
        case "interval":
            return _next_interval_run(schedule, tz, after)
        case "cron":
            return _next_cron_run(schedule, tz, after)
    raise InvalidScheduleError(f"Unknown schedule type: {schedule.type}")


def _add_interval(base: datetime, schedule: IntervalSchedule, steps: int, tz: ZoneInfo) -> datetime:
    amount = schedule.every * steps
    if schedule.unit in ABSOLUTE_UNITS:
        return base + timedelta(**{schedule.unit: amount})

    # Calendar units move the local wall clock, not the UTC instant
    local = base.astimezone(tz).replace(tzinfo=None)
    shifted = local + relativedelta(**{schedule.unit: amount})
    return shifted.replace(tzinfo=tz).astimezone(UTC)


def _estimate_steps(schedule: IntervalSchedule, start: datetime, after: datetime) -> int:
    """Lower bound for the number of steps between start and after."""
    if schedule.unit in ABSOLUTE_UNITS:
        step = timedelta(**{schedule.unit: schedule.every})
        return (after - start) // step
    delta = relativedelta(after, start)
    match schedule.unit:
        case "days":
            units = (after - start).days - 1
        case "months":
            units = delta.years * 12 + delta.months - 1
        case _:
            units = delta.years - 1
    return units // schedule.every


def _next_interval_run(schedule: IntervalSchedule, tz: ZoneInfo, after: datetime | None) -> datetime:
    start = schedule.start_at
    if start is None:
        return _add_interval(after or datetime.now(UTC), schedule, 1, tz)
    if after is None or after < start:
        return _add_interval(start, schedule, 1, tz)

    # Always step from the anchor so month-end anchors do not drift
    steps = max(1, _estimate_steps(schedule, start, after))
    candidate = _add_interval(start, schedule, steps, tz)
    while candidate <= after:
        steps += 1
        candidate = _add_interval(start, schedule, steps, tz)
    return candidate


def _next_cron_run(schedule: CronSchedule, tz: ZoneInfo, after: datetime | None) -> datetime:
    candidates = [value for value in (schedule.start_at, after) if value is not None]
    base = max(candidates) if candidates else datetime.now(UTC)

    # Iterate on naive wall-clock times so a time repeated by a DST fall-back fires once
    iterator = croniter(schedule.cron, base.astimezone(tz).replace(tzinfo=None))
    while True:
        candidate = iterator.get_next(datetime).replace(tzinfo=tz).astimezone(UTC)
        if candidate > base:
            return candidate


def serialize(schedule: IntervalSchedule | CronSchedule) -> str:
    """Encode a schedule into its storage string."""
    match schedule.type:
        case "interval":
            value = f"B={schedule.every} {UNIT_KEYS[schedule.unit]}"
            if schedule.start_at is not None:
                value += f" {to_epoch_ms(schedule.start_at)}"
            return value
        case "cron":
            value = f"C={schedule.cron}"
            if schedule.start_at is not None:
                value += f"|{to_epoch_ms(schedule.start_at)}"
            return value
    raise InvalidScheduleError(f"Unknown schedule type: {schedule.type}")


def deserialize(value: str) -> IntervalSchedule | CronSchedule:
    """
    Decode a storage string produced by ``serialize``.

    Raises:
        InvalidScheduleError: If the string is malformed.
    """
    kind, _, body = value.partition("=")
    try:
        if kind == "B":
            parts = body.split(" ")
            if len(parts) not in (2, 3) or parts[1] not in KEY_UNITS:
                raise InvalidScheduleError(f"Invalid interval schedule: {value}")
            return IntervalSchedule(
                every=int(parts[0]),
                unit=KEY_UNITS[parts[1]],
                start_at=from_epoch_ms(int(parts[2])) if len(parts) == 3 else None,
            )
        if kind == "C":
            expression, _, start_ms = body.partition("|")
            return CronSchedule(
                cron=expression,
                start_at=from_epoch_ms(int(start_ms)) if start_ms else None,
            )
    except ValueError as e:
        # pydantic's ValidationError is a ValueError too
        raise InvalidScheduleError(f"Invalid schedule {value}: {e}") from e
    raise InvalidScheduleError(f"Unknown schedule type: {kind}")


CRON_MACRO_GRANULARITY: dict[str, Granularity] = {
    "@yearly": "months",
    "@annually": "months",
    "@monthly": "days",
    "@weekly": "days",
    "@daily": "hours",
    "@midnight": "hours",
    "@hourly": "minutes",
}

# Granularity by position of the first wildcard field
CRON_FIELD_GRANULARITY: list[Granularity] = [
    "minutes",
    "hours",
    "hours",
    "months",
    "years",
    "years",
]


def guess_granularity(expression: str) -> Granularity:
    """Guess the display granularity of a cron expression."""
    expression = expression.strip()
    if expression in CRON_MACRO_GRANULARITY:
        return CRON_MACRO_GRANULARITY[expression]
    for index, part in enumerate(expression.split()):
        if part.startswith("*"):
            if index < len(CRON_FIELD_GRANULARITY):
                return CRON_FIELD_GRANULARITY[index]
            break
    return "days"


def simulate(
    schedule: IntervalSchedule | CronSchedule,
    counts: Mapping[str, int] | None = None,
    timezone: str | None = None,
) -> ScheduleSimulation:
    """
    Preview the next trigger instants of a schedule.

    Args:
        schedule: The schedule to preview. Runs start after ``start_at`` or now.
        counts: Number of runs to produce per granularity, 10 by default.
        timezone: IANA timezone for evaluation.
    """
    match schedule.type:
        case "interval":
            granularity = schedule.unit
        case "cron":
            granularity = guess_granularity(schedule.cron)

    count = (counts or {}).get(granularity) or DEFAULT_SIMULATION_COUNT
    current = schedule.start_at or normalize_instant(datetime.now(UTC))
    runs: list[datetime] = []
    for _ in range(count):
        current = next_run(schedule.model_copy(update={"start_at": current}), timezone)
        runs.append(current)
    return ScheduleSimulation(granularity=granularity, runs=runs)

"""
Recurrence expansion.

Turns an AvailabilityConfig into draft AvailabilitySlot rows for a date range.

Algorithm:
    1. Parse the config's recurrence blob into a typed pattern
       (Daily, Weekly or Custom) plus exception dates.
    2. Walk every calendar date of the range in the config's zone.
    3. For each included date, tile [local_start_time, local_end_time) into
       fixed-length local intervals; a partial trailing interval is dropped.
    4. Pin each interval's endpoints to UTC. Local strings never change across
       DST; only the instants do. An interval whose start or end reading is
       skipped by a spring-forward gap is dropped for that date.

The result is lazy and can be iterated again from the start. Drafts carry no
id; callers deduplicate by (professional_id, start_instant, end_instant),
which SlotStore.add_slots does.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterator, Union

from scheduling.core import config
from scheduling.core.errors import InvalidDateRange, InvalidRecurrenceConfig
from scheduling.models.availability import SLOT_AVAILABLE, AvailabilityConfig, AvailabilitySlot
from scheduling.services import timezones
from scheduling.services.collaborators import AccountDirectory

logger = logging.getLogger(__name__)

RECURRENCE_DAILY = 'daily'
RECURRENCE_WEEKLY = 'weekly'
RECURRENCE_CUSTOM = 'custom'

WEEKDAY_NAMES = {
    'monday': 1, 'mon': 1,
    'tuesday': 2, 'tue': 2,
    'wednesday': 3, 'wed': 3,
    'thursday': 4, 'thu': 4,
    'friday': 5, 'fri': 5,
    'saturday': 6, 'sat': 6,
    'sunday': 7, 'sun': 7,
}
CADENCE_UNITS = ('days', 'weeks')


@dataclass(frozen=True)
class Daily:
    def includes(self, day: date) -> bool:
        return True


@dataclass(frozen=True)
class Weekly:
    weekdays: frozenset[int]

    def includes(self, day: date) -> bool:
        return day.isoweekday() in self.weekdays


@dataclass(frozen=True)
class Custom:
    """Every ``every`` days or weeks counted from ``anchor``."""
    anchor: date
    every: int
    unit: str
    weekdays: frozenset[int]

    def includes(self, day: date) -> bool:
        if day < self.anchor:
            return False
        if self.unit == 'days':
            return (day - self.anchor).days % self.every == 0

        anchor_week_start = self.anchor - timedelta(days=self.anchor.weekday())
        weeks_since_anchor = (day - anchor_week_start).days // 7
        return weeks_since_anchor % self.every == 0 and day.isoweekday() in self.weekdays


Pattern = Union[Daily, Weekly, Custom]


@dataclass(frozen=True)
class Recurrence:
    pattern: Pattern
    exclude_dates: frozenset[date] = field(default_factory=frozenset)
    include_dates: frozenset[date] = field(default_factory=frozenset)

    def includes(self, day: date) -> bool:
        if day in self.include_dates:
            return True
        if day in self.exclude_dates:
            return False
        return self.pattern.includes(day)


def _parse_weekday(value) -> int:
    if isinstance(value, bool):
        raise InvalidRecurrenceConfig(f'Invalid weekday: {value!r}')
    if isinstance(value, int):
        if 1 <= value <= 7:
            return value
        raise InvalidRecurrenceConfig(f'Weekday numbers run from 1 (Monday) to 7 (Sunday), got {value}.')
    if isinstance(value, str) and value.strip().lower() in WEEKDAY_NAMES:
        return WEEKDAY_NAMES[value.strip().lower()]
    raise InvalidRecurrenceConfig(f'Invalid weekday: {value!r}')


def _parse_weekdays(values) -> frozenset[int]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise InvalidRecurrenceConfig('weekdays must be a list.')
    return frozenset(_parse_weekday(value) for value in values)


def _parse_date(value, label: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise InvalidRecurrenceConfig(f'{label} must be an ISO date, got {value!r}.') from exc
    raise InvalidRecurrenceConfig(f'{label} must be an ISO date, got {value!r}.')


def _parse_date_set(values, label: str) -> frozenset[date]:
    if values is None:
        return frozenset()
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise InvalidRecurrenceConfig(f'{label} must be a list of ISO dates.')
    return frozenset(_parse_date(value, label) for value in values)


def parse_recurrence(recurrence_type: str, params: dict | None) -> Recurrence:
    params = params or {}
    if not isinstance(params, dict):
        raise InvalidRecurrenceConfig('recurrence_params must be an object.')

    kind = (recurrence_type or '').strip().lower()
    if kind == RECURRENCE_DAILY:
        pattern = Daily()
    elif kind == RECURRENCE_WEEKLY:
        weekdays = _parse_weekdays(params.get('weekdays', []))
        if not weekdays:
            raise InvalidRecurrenceConfig('Weekly recurrence needs at least one weekday.')
        pattern = Weekly(weekdays=weekdays)
    elif kind == RECURRENCE_CUSTOM:
        if 'anchor' not in params:
            raise InvalidRecurrenceConfig('Custom recurrence needs an anchor date.')
        anchor = _parse_date(params['anchor'], 'anchor')
        every = params.get('every', 1)
        if isinstance(every, bool) or not isinstance(every, int) or every < 1:
            raise InvalidRecurrenceConfig(f'every must be a positive integer, got {every!r}.')
        unit = str(params.get('unit', 'weeks')).strip().lower()
        if unit not in CADENCE_UNITS:
            raise InvalidRecurrenceConfig(f'unit must be one of {CADENCE_UNITS}, got {unit!r}.')
        if 'weekdays' in params:
            weekdays = _parse_weekdays(params['weekdays'])
            if not weekdays:
                raise InvalidRecurrenceConfig('Custom recurrence weekdays cannot be empty.')
        else:
            weekdays = frozenset({anchor.isoweekday()})
        pattern = Custom(anchor=anchor, every=every, unit=unit, weekdays=weekdays)
    else:
        raise InvalidRecurrenceConfig(f'Unsupported recurrence type: {recurrence_type!r}')

    return Recurrence(
        pattern=pattern,
        exclude_dates=_parse_date_set(params.get('exclude_dates'), 'exclude_dates'),
        include_dates=_parse_date_set(params.get('include_dates'), 'include_dates'),
    )


def parse_local_time(value: time | str) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    try:
        return time.fromisoformat(value.strip()).replace(second=0, microsecond=0)
    except (AttributeError, ValueError) as exc:
        raise InvalidRecurrenceConfig(f'Invalid wall-clock time: {value!r}') from exc


def tile_window(window_start: time, window_end: time, duration_minutes: int) -> list[tuple[time, time]]:
    start_minutes = window_start.hour * 60 + window_start.minute
    end_minutes = window_end.hour * 60 + window_end.minute

    tiles = []
    cursor = start_minutes
    while cursor + duration_minutes <= end_minutes:
        tile_end = cursor + duration_minutes
        tiles.append((time(cursor // 60, cursor % 60), time(tile_end // 60, tile_end % 60)))
        cursor = tile_end
    return tiles


def validate_config(availability_config: AvailabilityConfig) -> Recurrence:
    start = parse_local_time(availability_config.local_start_time)
    end = parse_local_time(availability_config.local_end_time)
    if start >= end:
        raise InvalidRecurrenceConfig('local_start_time must be before local_end_time.')

    duration = availability_config.slot_duration_minutes
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise InvalidRecurrenceConfig('slot_duration_minutes must be a positive integer.')

    return parse_recurrence(availability_config.recurrence_type, availability_config.recurrence_params)


def _to_local_date(value: date | datetime, zone_name: str) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return timezones.to_local(value, zone_name).date()
        return value.date()
    return value


class SlotExpansion:
    """Lazy, restartable sequence of draft slots for one config and range.

    Built without a recurrence it is empty, which is what inactive configs get.
    """

    def __init__(
        self,
        availability_config: AvailabilityConfig,
        recurrence: Recurrence | None = None,
        zone_name: str | None = None,
        first_day: date | None = None,
        last_day: date | None = None,
    ):
        self.config = availability_config
        self.recurrence = recurrence
        self.zone_name = zone_name
        self.first_day = first_day
        self.last_day = last_day
        self.tiles = []
        if recurrence is not None:
            self.tiles = tile_window(
                parse_local_time(availability_config.local_start_time),
                parse_local_time(availability_config.local_end_time),
                availability_config.slot_duration_minutes,
            )

    def occurrences(self) -> Iterator[date]:
        if self.recurrence is None:
            return
        day = self.first_day
        while day <= self.last_day:
            if self.recurrence.includes(day):
                yield day
            day += timedelta(days=1)

    def _tile_exists(self, local_start: datetime, local_end: datetime) -> bool:
        # The end is exclusive: 02:00 closing a tile is fine on a day that skips 02:00-03:00.
        return timezones.wall_clock_exists(local_start, self.zone_name) and (
            timezones.wall_clock_exists(local_end, self.zone_name)
            or timezones.wall_clock_exists(local_end - timedelta(minutes=1), self.zone_name)
        )

    def __iter__(self) -> Iterator[AvailabilitySlot]:
        for day in self.occurrences():
            for local_start, local_end in self.tiles:
                start_reading = datetime.combine(day, local_start)
                end_reading = datetime.combine(day, local_end)
                if not self._tile_exists(start_reading, end_reading):
                    logger.debug(
                        'Skipping %s %s-%s in %s: wall-clock time falls in a DST gap',
                        day, local_start, local_end, self.zone_name,
                    )
                    continue

                yield AvailabilitySlot(
                    id=None,
                    professional_id=self.config.professional_id,
                    config_id=self.config.id,
                    start_instant=timezones.to_utc(start_reading, self.zone_name),
                    end_instant=timezones.to_utc(end_reading, self.zone_name),
                    local_start_time=local_start.strftime('%H:%M'),
                    local_end_time=local_end.strftime('%H:%M'),
                    timezone=self.zone_name,
                    status=SLOT_AVAILABLE,
                    booked_by=None,
                    booked_at=None,
                    appointment_id=None,
                )


class RecurrenceExpander:

    def __init__(
        self,
        account_directory: AccountDirectory | None = None,
        max_range_days: int = config.MAX_EXPANSION_DAYS,
    ):
        self.account_directory = account_directory
        self.max_range_days = max_range_days

    def resolve_zone(self, availability_config: AvailabilityConfig) -> str:
        fallback = None
        if self.account_directory is not None:
            fallback = self.account_directory.get_professional_timezone_default(
                availability_config.professional_id
            )
        return timezones.resolve_zone_name(availability_config.timezone, fallback)

    def expand(
        self,
        availability_config: AvailabilityConfig,
        range_start: date | datetime,
        range_end: date | datetime,
    ) -> SlotExpansion:
        # is_active stays None until the row is flushed; only an explicit False deactivates.
        if availability_config.is_active is False:
            return SlotExpansion(availability_config)

        recurrence = validate_config(availability_config)
        zone_name = self.resolve_zone(availability_config)

        first_day = _to_local_date(range_start, zone_name)
        last_day = _to_local_date(range_end, zone_name)
        if first_day > last_day:
            raise InvalidDateRange('Range start must not be after range end.')
        if (last_day - first_day).days + 1 > self.max_range_days:
            raise InvalidDateRange(f'Date range too large. Maximum allowed: {self.max_range_days} days.')

        return SlotExpansion(availability_config, recurrence, zone_name, first_day, last_day)

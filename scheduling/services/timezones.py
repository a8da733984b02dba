"""Wall-clock conversion between IANA zones.

Naive datetimes are wall-clock readings in the zone they are paired with.
Aware datetimes are absolute instants. Two DST edge cases are resolved
deterministically when a wall-clock reading is pinned to an instant:

* a reading inside a spring-forward gap is shifted forward by the gap length
* a reading inside a fall-back overlap resolves to the earlier instant
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import pytz

from scheduling.core.errors import InvalidTimezone

logger = logging.getLogger(__name__)

COMMON_TIMEZONES = (
    'America/Buenos_Aires',
    'America/Santiago',
    'America/Lima',
    'America/Bogota',
    'America/Mexico_City',
    'America/New_York',
    'America/Los_Angeles',
    'Europe/Madrid',
    'Europe/London',
    'Europe/Paris',
    'Asia/Tokyo',
    'Australia/Sydney',
    'Pacific/Auckland',
)

ZONE_ALIASES = {
    'buenos aires': 'America/Buenos_Aires',
    'argentina': 'America/Buenos_Aires',
    'santiago': 'America/Santiago',
    'chile': 'America/Santiago',
    'lima': 'America/Lima',
    'peru': 'America/Lima',
    'bogota': 'America/Bogota',
    'colombia': 'America/Bogota',
    'mexico city': 'America/Mexico_City',
    'mexico': 'America/Mexico_City',
    'new york': 'America/New_York',
    'nyc': 'America/New_York',
    'los angeles': 'America/Los_Angeles',
    'la': 'America/Los_Angeles',
    'madrid': 'Europe/Madrid',
    'spain': 'Europe/Madrid',
    'london': 'Europe/London',
    'uk': 'Europe/London',
    'tokyo': 'Asia/Tokyo',
    'japan': 'Asia/Tokyo',
    'sydney': 'Australia/Sydney',
    'australia': 'Australia/Sydney',
}


@dataclass(frozen=True)
class ConversionResult:
    utc: datetime
    local: datetime
    timezone: str
    offset_minutes: int
    is_dst: bool


def get_zone(zone_name: str | None) -> pytz.BaseTzInfo:
    if not zone_name:
        raise InvalidTimezone(zone_name)
    try:
        return pytz.timezone(zone_name)
    except pytz.UnknownTimeZoneError as exc:
        raise InvalidTimezone(zone_name) from exc


def is_valid_zone(zone_name: str | None) -> bool:
    try:
        get_zone(zone_name)
    except InvalidTimezone:
        return False
    return True


def find_similar_timezone(zone_name: str | None) -> str | None:
    """Best guess for a misspelled zone: 'nyc', 'Buenos_Aires', 'europe/madrid'."""
    if not zone_name:
        return None
    key = zone_name.strip().replace('_', ' ').lower()
    if key in ZONE_ALIASES:
        return ZONE_ALIASES[key]
    for candidate in pytz.common_timezones:
        if candidate.replace('_', ' ').lower() == key:
            return candidate
    return None


def resolve_zone_name(zone_name: str | None, *fallbacks: str | None) -> str:
    """Return the first usable zone among ``zone_name``, a close match and ``fallbacks``.

    Raises InvalidTimezone for ``zone_name`` when none of them is usable.
    """
    if is_valid_zone(zone_name):
        return zone_name
    similar = find_similar_timezone(zone_name)
    if similar is not None:
        logger.warning('Invalid timezone %r, substituting close match %r', zone_name, similar)
        return similar
    for fallback in fallbacks:
        if is_valid_zone(fallback):
            logger.warning('Invalid timezone %r, substituting %r', zone_name, fallback)
            return fallback
    raise InvalidTimezone(zone_name)


def localize(local_dt: datetime, zone_name: str) -> datetime:
    """Pin a wall-clock reading in ``zone_name`` to an aware datetime in that zone."""
    zone = get_zone(zone_name)
    if local_dt.tzinfo is not None:
        return zone.normalize(local_dt.astimezone(zone))

    try:
        return zone.localize(local_dt, is_dst=None)
    except pytz.AmbiguousTimeError:
        candidates = [zone.localize(local_dt, is_dst=flag) for flag in (True, False)]
        return min(candidates)
    except pytz.NonExistentTimeError:
        # The later of the two readings is the one taken with the pre-gap offset.
        candidates = [zone.localize(local_dt, is_dst=flag) for flag in (True, False)]
        return zone.normalize(max(candidates))


@dataclass(frozen=True)
class DstTransition:
    instant: datetime
    offset_before_minutes: int
    offset_after_minutes: int

    @property
    def delta_minutes(self) -> int:
        return self.offset_after_minutes - self.offset_before_minutes

    @property
    def kind(self) -> str:
        return 'spring_forward' if self.delta_minutes > 0 else 'fall_back'

    def to_dict(self) -> dict:
        return {
            'instant': self.instant.isoformat(),
            'kind': self.kind,
            'offset_before_minutes': self.offset_before_minutes,
            'offset_after_minutes': self.offset_after_minutes,
        }


def _offset_minutes(offset) -> int:
    return int(offset.total_seconds() // 60)


def wall_clock_exists(local_dt: datetime, zone_name: str) -> bool:
    """False for readings skipped by a spring-forward gap."""
    zone = get_zone(zone_name)
    try:
        zone.localize(local_dt.replace(tzinfo=None), is_dst=None)
    except pytz.NonExistentTimeError:
        return False
    except pytz.AmbiguousTimeError:
        return True
    return True


def dst_transitions(zone_name: str, year: int) -> list[DstTransition]:
    """Offset changes of ``zone_name`` whose UTC instant falls in ``year``."""
    zone = get_zone(zone_name)
    # Fixed-offset zones such as UTC carry no transition table.
    transition_times = getattr(zone, '_utc_transition_times', None) or []
    transition_info = getattr(zone, '_transition_info', None) or []

    transitions = []
    for index in range(1, len(transition_times)):
        if transition_times[index].year != year:
            continue
        before = transition_info[index - 1][0]
        after = transition_info[index][0]
        if before == after:
            continue
        transitions.append(DstTransition(
            instant=transition_times[index].replace(tzinfo=timezone.utc),
            offset_before_minutes=_offset_minutes(before),
            offset_after_minutes=_offset_minutes(after),
        ))
    return transitions


def transitions_between(start: datetime, end: datetime, zone_name: str) -> list[DstTransition]:
    """Transitions strictly inside the instants ``(start, end)``; naive values are UTC."""
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    found = []
    for year in range(start.astimezone(timezone.utc).year, end.astimezone(timezone.utc).year + 1):
        found.extend(
            transition for transition in dst_transitions(zone_name, year)
            if start < transition.instant < end
        )
    return found


def crosses_dst_transition(start: datetime, end: datetime, zone_name: str) -> bool:
    return bool(transitions_between(start, end, zone_name))


def to_utc(local_dt: datetime, zone_name: str) -> datetime:
    return localize(local_dt, zone_name).astimezone(timezone.utc)


def to_local(instant: datetime, zone_name: str) -> datetime:
    """Wall-clock reading (naive) of an absolute instant in ``zone_name``."""
    zone = get_zone(zone_name)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return zone.normalize(instant.astimezone(zone)).replace(tzinfo=None)


def _parse(value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            return datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f'Invalid datetime value: {value!r}') from exc
    raise TypeError(f'Unsupported datetime value: {type(value).__name__}')


def convert(value: datetime | str, from_zone: str, to_zone: str) -> ConversionResult:
    """Convert a wall-clock reading in ``from_zone`` (or an instant) into ``to_zone``."""
    source = _parse(value)
    target_zone = get_zone(to_zone)

    if source.tzinfo is None:
        instant = to_utc(source, from_zone)
    else:
        get_zone(from_zone)
        instant = source.astimezone(timezone.utc)

    target = target_zone.normalize(instant.astimezone(target_zone))
    return ConversionResult(
        utc=instant,
        local=target.replace(tzinfo=None),
        timezone=target_zone.zone,
        offset_minutes=int(target.utcoffset().total_seconds() // 60),
        is_dst=bool(target.dst()),
    )


def timezone_info(zone_name: str, at: datetime | None = None) -> dict:
    zone = get_zone(zone_name)
    instant = at or datetime.now(timezone.utc)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    local = zone.normalize(instant.astimezone(zone))
    return {
        'identifier': zone.zone,
        'name': zone.zone.split('/')[-1].replace('_', ' '),
        'abbreviation': local.tzname(),
        'offset_minutes': int(local.utcoffset().total_seconds() // 60),
        'offset_string': local.strftime('%z'),
        'is_dst': bool(local.dst()),
    }


def list_timezones() -> list[str]:
    return list(COMMON_TIMEZONES)


def format_for_api(result: ConversionResult) -> dict:
    zone = get_zone(result.timezone)
    aware_local = zone.normalize(result.utc.astimezone(zone))
    return {
        'utc': result.utc.isoformat(),
        'local': aware_local.isoformat(),
        'timezone': result.timezone,
        'offset_minutes': result.offset_minutes,
        'is_dst': result.is_dst,
        'formatted': {
            'date': result.local.strftime('%Y-%m-%d'),
            'time': result.local.strftime('%H:%M:%S'),
            'datetime': result.local.strftime('%Y-%m-%d %H:%M:%S'),
        },
    }

from datetime import date, datetime, time, timedelta, timezone

import pytest

from scheduling.core.errors import InvalidDateRange, InvalidRecurrenceConfig, InvalidTimezone
from scheduling.services.collaborators import StaticAccountDirectory
from scheduling.services.recurrence import (
    Custom,
    Daily,
    RecurrenceExpander,
    SlotExpansion,
    Weekly,
    parse_recurrence,
    tile_window,
)


@pytest.fixture
def expander() -> RecurrenceExpander:
    return RecurrenceExpander()


def test_weekly_monday_config_in_buenos_aires(expander, make_config) -> None:
    availability_config = make_config(recurrence_type='weekly', recurrence_params={'weekdays': [1]})

    slots = list(expander.expand(availability_config, date(2026, 3, 1), date(2026, 3, 31)))

    mondays = sorted({slot.start_instant.date() for slot in slots})
    assert mondays == [date(2026, 3, 2), date(2026, 3, 9), date(2026, 3, 16), date(2026, 3, 23), date(2026, 3, 30)]
    assert len(slots) == 5 * 8

    first_day = [slot for slot in slots if slot.start_instant.date() == date(2026, 3, 2)]
    assert [slot.local_start_time for slot in first_day] == [f'{hour:02d}:00' for hour in range(9, 17)]
    assert [slot.local_end_time for slot in first_day] == [f'{hour:02d}:00' for hour in range(10, 18)]
    assert first_day[0].start_instant == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    assert all(slot.id is None and slot.status == 'available' for slot in slots)


@pytest.mark.parametrize(
    ('range_start', 'range_end', 'before', 'after'),
    [
        # Spring forward on 2026-03-08.
        (date(2026, 3, 1), date(2026, 3, 15), datetime(2026, 3, 2, 14, 0), datetime(2026, 3, 9, 13, 0)),
        # Fall back on 2026-11-01.
        (date(2026, 10, 25), date(2026, 11, 8), datetime(2026, 10, 26, 13, 0), datetime(2026, 11, 2, 14, 0)),
    ],
)
def test_wall_clock_times_survive_dst_transitions(
    expander,
    make_config,
    range_start: date,
    range_end: date,
    before: datetime,
    after: datetime,
) -> None:
    availability_config = make_config(
        timezone='America/New_York',
        local_end_time=time(10, 0),
        recurrence_type='weekly',
        recurrence_params={'weekdays': ['monday']},
    )

    slots = list(expander.expand(availability_config, range_start, range_end))

    assert [slot.start_instant for slot in slots] == [
        before.replace(tzinfo=timezone.utc),
        after.replace(tzinfo=timezone.utc),
    ]
    assert {(slot.local_start_time, slot.local_end_time) for slot in slots} == {('09:00', '10:00')}


def test_window_inside_dst_gap_is_skipped(expander, make_config) -> None:
    availability_config = make_config(
        timezone='America/New_York',
        local_start_time=time(2, 0),
        local_end_time=time(3, 0),
    )

    assert list(expander.expand(availability_config, date(2026, 3, 8), date(2026, 3, 8))) == []
    assert len(list(expander.expand(availability_config, date(2026, 3, 9), date(2026, 3, 9)))) == 1


def test_tiles_starting_inside_dst_gap_are_skipped(expander, make_config) -> None:
    availability_config = make_config(
        timezone='America/New_York',
        local_start_time=time(1, 0),
        local_end_time=time(4, 0),
        slot_duration_minutes=30,
    )

    slots = list(expander.expand(availability_config, date(2026, 3, 8), date(2026, 3, 8)))

    assert [(slot.local_start_time, slot.local_end_time) for slot in slots] == [
        ('01:00', '01:30'),
        ('01:30', '02:00'),
        ('03:00', '03:30'),
        ('03:30', '04:00'),
    ]
    assert [slot.start_instant.hour for slot in slots] == [6, 6, 7, 7]
    assert slots[1].end_instant == slots[2].start_instant
    assert len({slot.key for slot in slots}) == len(slots)


def test_tile_ending_inside_dst_gap_is_skipped(expander, make_config) -> None:
    availability_config = make_config(
        timezone='America/New_York',
        local_start_time=time(1, 45),
        local_end_time=time(3, 25),
        slot_duration_minutes=25,
    )

    slots = list(expander.expand(availability_config, date(2026, 3, 8), date(2026, 3, 8)))

    # 01:45-02:10 and the tiles starting at 02:10 and 02:35 never happen that night.
    assert [(slot.local_start_time, slot.local_end_time) for slot in slots] == [('03:00', '03:25')]


def test_partial_trailing_slot_is_dropped(expander, make_config) -> None:
    availability_config = make_config(local_end_time=time(10, 30))

    slots = list(expander.expand(availability_config, date(2026, 3, 2), date(2026, 3, 2)))

    assert [(slot.local_start_time, slot.local_end_time) for slot in slots] == [('09:00', '10:00')]


def test_tile_window_uses_fixed_duration() -> None:
    assert tile_window(time(9, 0), time(10, 0), 20) == [
        (time(9, 0), time(9, 20)),
        (time(9, 20), time(9, 40)),
        (time(9, 40), time(10, 0)),
    ]


def test_exception_dates_adjust_the_pattern(expander, make_config) -> None:
    availability_config = make_config(
        local_end_time=time(10, 0),
        recurrence_type='weekly',
        recurrence_params={
            'weekdays': [1],
            'exclude_dates': ['2026-03-09'],
            'include_dates': ['2026-03-11'],
        },
    )

    slots = list(expander.expand(availability_config, date(2026, 3, 1), date(2026, 3, 16)))

    assert [slot.start_instant.date() for slot in slots] == [date(2026, 3, 2), date(2026, 3, 11), date(2026, 3, 16)]


def test_custom_biweekly_cadence(expander, make_config) -> None:
    availability_config = make_config(
        local_end_time=time(10, 0),
        recurrence_type='custom',
        recurrence_params={'anchor': '2026-03-02', 'every': 2, 'unit': 'weeks', 'weekdays': ['mon']},
    )

    slots = list(expander.expand(availability_config, date(2026, 2, 1), date(2026, 3, 31)))

    assert [slot.start_instant.date() for slot in slots] == [date(2026, 3, 2), date(2026, 3, 16), date(2026, 3, 30)]


def test_custom_day_cadence_never_matches_before_anchor() -> None:
    pattern = parse_recurrence('custom', {'anchor': '2026-03-02', 'every': 3, 'unit': 'days'}).pattern

    assert isinstance(pattern, Custom)
    matching = [date(2026, 3, 1) + timedelta(days=offset) for offset in range(10)]
    assert [day for day in matching if pattern.includes(day)] == [date(2026, 3, 2), date(2026, 3, 5), date(2026, 3, 8)]


def test_parse_recurrence_builds_tagged_patterns() -> None:
    assert isinstance(parse_recurrence('daily', None).pattern, Daily)
    weekly = parse_recurrence('Weekly', {'weekdays': [1, 'Fri', 'sunday']}).pattern
    assert weekly == Weekly(weekdays=frozenset({1, 5, 7}))


@pytest.mark.parametrize(
    ('recurrence_type', 'params'),
    [
        ('weekly', {'weekdays': []}),
        ('weekly', {}),
        ('weekly', {'weekdays': [8]}),
        ('weekly', {'weekdays': ['someday']}),
        ('custom', {'every': 2}),
        ('custom', {'anchor': '2026-03-02', 'every': 0}),
        ('custom', {'anchor': '2026-03-02', 'unit': 'months'}),
        ('daily', {'exclude_dates': ['not-a-date']}),
        ('hourly', {}),
    ],
)
def test_parse_recurrence_rejects_malformed_params(recurrence_type: str, params: dict) -> None:
    with pytest.raises(InvalidRecurrenceConfig):
        parse_recurrence(recurrence_type, params)


@pytest.mark.parametrize(
    'overrides',
    [
        {'local_start_time': time(17, 0), 'local_end_time': time(9, 0)},
        {'local_start_time': time(9, 0), 'local_end_time': time(9, 0)},
        {'slot_duration_minutes': 0},
        {'recurrence_type': 'weekly', 'recurrence_params': {'weekdays': []}},
    ],
)
def test_invalid_config_produces_no_slots(expander, make_config, overrides: dict) -> None:
    with pytest.raises(InvalidRecurrenceConfig):
        expander.expand(make_config(**overrides), date(2026, 3, 1), date(2026, 3, 31))


def test_inactive_config_yields_nothing(expander, make_config) -> None:
    availability_config = make_config(is_active=False, recurrence_params={'weekdays': []}, recurrence_type='weekly')

    expansion = expander.expand(availability_config, date(2026, 3, 1), date(2026, 3, 31))

    assert isinstance(expansion, SlotExpansion)
    assert list(expansion) == []
    assert list(expansion) == []


def test_range_validation(make_config) -> None:
    expander = RecurrenceExpander(max_range_days=31)

    with pytest.raises(InvalidDateRange):
        expander.expand(make_config(), date(2026, 3, 10), date(2026, 3, 1))
    with pytest.raises(InvalidDateRange):
        expander.expand(make_config(), date(2026, 1, 1), date(2026, 3, 1))


def test_expansion_can_be_iterated_again(expander, make_config) -> None:
    expansion = expander.expand(make_config(), date(2026, 3, 1), date(2026, 3, 7))

    first_pass = [slot.key for slot in expansion]
    second_pass = [slot.key for slot in expansion]

    assert first_pass == second_pass
    assert len(first_pass) == 7 * 8


def test_regenerating_a_range_does_not_duplicate_slots(expander, make_config, store) -> None:
    availability_config = store.add_config(make_config())

    first = store.add_slots(expander.expand(availability_config, date(2026, 3, 1), date(2026, 3, 7)))
    second = store.add_slots(expander.expand(availability_config, date(2026, 3, 1), date(2026, 3, 14)))

    assert len(first) == 56
    assert len(second) == 56
    assert all(slot.config_id == availability_config.id for slot in first + second)
    assert sum(store.count_slots_by_status(
        'pro-1',
        datetime(2026, 3, 1, tzinfo=timezone.utc),
        datetime(2026, 3, 16, tzinfo=timezone.utc),
    ).values()) == 112


def test_invalid_zone_falls_back_to_account_default(make_config) -> None:
    expander = RecurrenceExpander(StaticAccountDirectory({'pro-1': 'America/Lima'}))
    availability_config = make_config(timezone='Mars/Olympus_Mons', local_end_time=time(10, 0))

    slots = list(expander.expand(availability_config, date(2026, 3, 2), date(2026, 3, 2)))

    assert slots[0].timezone == 'America/Lima'
    assert slots[0].start_instant == datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


def test_invalid_zone_without_fallback_is_surfaced(expander, make_config) -> None:
    with pytest.raises(InvalidTimezone):
        expander.expand(make_config(timezone='Mars/Olympus_Mons'), date(2026, 3, 2), date(2026, 3, 2))

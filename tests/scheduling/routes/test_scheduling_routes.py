from datetime import date, datetime, time, timedelta, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from scheduling.core.errors import BackingStoreTimeout, SchedulingError
from scheduling.routes.scheduling_routes import (
    CancelAppointmentRequest,
    CancelSlotRequest,
    ConflictCheckRequest,
    ConvertTimezoneRequest,
    CreateBlockedPeriodRequest,
    CreateConfigRequest,
    ExpandRequest,
    ReserveSlotRequest,
    cancel_appointment,
    cancel_slot,
    check_conflicts,
    convert_timezone,
    create_blocked_period,
    create_config,
    expand_config,
    get_conflict_statistics,
    get_dst_transitions,
    get_slot_statistics,
    list_timezones,
    reserve_slot,
    to_http_exception,
)
from scheduling.services.scheduler import Scheduler


@pytest.fixture
def scheduler(store) -> Scheduler:
    return Scheduler(store)


@pytest.fixture
def booking_day() -> date:
    # Far enough ahead for the advance-booking rules evaluated against the real clock.
    return date.today() + timedelta(days=7)


def config_request(**overrides) -> CreateConfigRequest:
    values = {
        'professional_id': ' pro-1 ',
        'timezone': 'UTC',
        'local_start_time': time(9, 0),
        'local_end_time': time(12, 0),
        'slot_duration_minutes': 60,
        'recurrence_type': 'Daily',
    }
    values.update(overrides)
    return CreateConfigRequest(**values)


def generated_slots(scheduler: Scheduler, booking_day: date):
    created = create_config(config_request(), scheduler=scheduler)
    response = expand_config(
        created.id,
        ExpandRequest(range_start=booking_day, range_end=booking_day, persist=True),
        scheduler=scheduler,
    )
    return response.slots


def test_create_config_request_normalizes_fields() -> None:
    request = config_request()

    assert request.professional_id == 'pro-1'
    assert request.recurrence_type == 'daily'


@pytest.mark.parametrize(
    'overrides',
    [
        {'professional_id': '   '},
        {'recurrence_type': 'hourly'},
        {'slot_duration_minutes': 0},
    ],
)
def test_create_config_request_rejects_invalid_fields(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        config_request(**overrides)


@pytest.mark.parametrize(
    ('overrides', 'detail'),
    [
        ({'timezone': 'Mars/Olympus_Mons'}, "Unknown timezone: 'Mars/Olympus_Mons'"),
        ({'recurrence_type': 'weekly', 'recurrence_params': {'weekdays': []}}, 'Weekly recurrence needs at least one weekday.'),
        ({'local_start_time': time(12, 0), 'local_end_time': time(9, 0)}, 'local_start_time must be before local_end_time.'),
    ],
)
def test_create_config_rejects_unusable_configs(scheduler, overrides: dict, detail: str) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_config(config_request(**overrides), scheduler=scheduler)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == detail


def test_expand_without_persist_returns_drafts(scheduler, store, booking_day) -> None:
    created = create_config(config_request(), scheduler=scheduler)

    response = expand_config(
        created.id,
        ExpandRequest(range_start=booking_day, range_end=booking_day),
        scheduler=scheduler,
    )

    assert response.total == 3
    assert response.persisted is False
    assert [slot.local_start_time for slot in response.slots] == ['09:00', '10:00', '11:00']
    assert all(slot.id is None for slot in response.slots)
    assert store.find_slots('pro-1', datetime.min.replace(tzinfo=timezone.utc), datetime.max.replace(tzinfo=timezone.utc)) == []


def test_expand_unknown_config_returns_not_found(scheduler, booking_day) -> None:
    with pytest.raises(HTTPException) as exception_info:
        expand_config('missing', ExpandRequest(range_start=booking_day, range_end=booking_day), scheduler=scheduler)

    assert exception_info.value.status_code == 404


def test_expand_rejects_reversed_range(scheduler, booking_day) -> None:
    created = create_config(config_request(), scheduler=scheduler)

    with pytest.raises(HTTPException) as exception_info:
        expand_config(
            created.id,
            ExpandRequest(range_start=booking_day, range_end=booking_day - timedelta(days=1)),
            scheduler=scheduler,
        )

    assert exception_info.value.status_code == 400


def test_reserve_then_reserve_again_returns_conflict_status(scheduler, booking_day) -> None:
    slot_id = generated_slots(scheduler, booking_day)[0].id

    appointment = reserve_slot(slot_id, ReserveSlotRequest(client_id='client-1'), scheduler=scheduler)
    with pytest.raises(HTTPException) as exception_info:
        reserve_slot(slot_id, ReserveSlotRequest(client_id='client-2'), scheduler=scheduler)

    assert appointment.status == 'confirmed'
    assert exception_info.value.status_code == 409


def test_reserve_missing_slot_returns_not_found(scheduler) -> None:
    with pytest.raises(HTTPException) as exception_info:
        reserve_slot('missing', ReserveSlotRequest(client_id='client-1'), scheduler=scheduler)

    assert exception_info.value.status_code == 404


def test_reserve_request_requires_client_id() -> None:
    with pytest.raises(ValidationError):
        ReserveSlotRequest(client_id='  ')


def test_blocked_period_over_appointment_needs_force(scheduler, booking_day) -> None:
    slot = generated_slots(scheduler, booking_day)[0]
    reserve_slot(slot.id, ReserveSlotRequest(client_id='client-1'), scheduler=scheduler)
    request = CreateBlockedPeriodRequest(
        professional_id='pro-1',
        start_instant=slot.start_instant,
        end_instant=slot.end_instant,
        timezone='UTC',
        reason='Dentist',
    )

    with pytest.raises(HTTPException) as exception_info:
        create_blocked_period(request, scheduler=scheduler)

    assert exception_info.value.status_code == 422
    assert exception_info.value.detail['report']['conflicts'][0]['type'] == 'double_booking'

    created = create_blocked_period(request.model_copy(update={'force': True}), scheduler=scheduler)
    assert created.is_active is True


def test_reserve_under_blocked_period_returns_report(scheduler, booking_day) -> None:
    slot = generated_slots(scheduler, booking_day)[1]
    create_blocked_period(
        CreateBlockedPeriodRequest(
            professional_id='pro-1',
            start_instant=slot.start_instant.replace(tzinfo=None),
            end_instant=slot.end_instant.replace(tzinfo=None),
            timezone='UTC',
        ),
        scheduler=scheduler,
    )

    with pytest.raises(HTTPException) as exception_info:
        reserve_slot(slot.id, ReserveSlotRequest(client_id='client-1'), scheduler=scheduler)

    assert exception_info.value.status_code == 422
    assert exception_info.value.detail['report']['valid'] is False
    assert exception_info.value.detail['report']['summary']['critical_count'] == 1


def test_check_conflicts_returns_report(scheduler, booking_day) -> None:
    create_config(config_request(), scheduler=scheduler)
    start = datetime.combine(booking_day, time(15, 0))

    report = check_conflicts(
        ConflictCheckRequest(professional_id='pro-1', start=start, end=start + timedelta(hours=1), timezone='UTC'),
        scheduler=scheduler,
    )

    assert report['valid'] is True
    assert [conflict['details']['rule'] for conflict in report['conflicts']] == ['business_hours']


def test_check_conflicts_rejects_unknown_entity_type() -> None:
    with pytest.raises(ValidationError):
        ConflictCheckRequest(
            entity_type='meeting',
            professional_id='pro-1',
            start=datetime(2026, 3, 10, 9, 0),
            end=datetime(2026, 3, 10, 10, 0),
        )


def test_cancel_appointment_and_slot(scheduler, booking_day) -> None:
    slots = generated_slots(scheduler, booking_day)
    appointment = reserve_slot(slots[0].id, ReserveSlotRequest(client_id='client-1'), scheduler=scheduler)

    cancelled = cancel_appointment(
        appointment.id,
        CancelAppointmentRequest(actor_id='client-1', reason='Conflict at work'),
        scheduler=scheduler,
    )
    cancelled_slot = cancel_slot(slots[2].id, CancelSlotRequest(actor_id='admin-1'), scheduler=scheduler)

    assert cancelled.status == 'cancelled'
    assert cancelled.cancel_reason == 'Conflict at work'
    assert cancelled_slot.status == 'cancelled'

    with pytest.raises(HTTPException) as exception_info:
        cancel_appointment('missing', CancelAppointmentRequest(actor_id='client-1'), scheduler=scheduler)
    assert exception_info.value.status_code == 404


def test_slot_statistics_route(scheduler, booking_day) -> None:
    slots = generated_slots(scheduler, booking_day)
    reserve_slot(slots[0].id, ReserveSlotRequest(client_id='client-1'), scheduler=scheduler)
    day_start = datetime.combine(booking_day, time(0, 0), tzinfo=timezone.utc)

    stats = get_slot_statistics('pro-1', start=day_start, end=day_start + timedelta(days=1), scheduler=scheduler)

    assert stats['total_slots'] == 3
    assert stats['booked_slots'] == 1
    assert stats['utilization_rate'] == 33.33


def test_convert_timezone_route(scheduler) -> None:
    payload = convert_timezone(
        ConvertTimezoneRequest(value='2026-03-02T09:00:00', from_zone='America/Buenos_Aires', to_zone='Europe/Madrid'),
        scheduler=scheduler,
    )

    assert payload['local'] == '2026-03-02T13:00:00+01:00'
    assert payload['offset_minutes'] == 60


@pytest.mark.parametrize(
    ('value', 'from_zone'),
    [
        ('2026-03-02T09:00:00', 'Mars/Olympus_Mons'),
        ('not a date', 'UTC'),
    ],
)
def test_convert_timezone_route_rejects_bad_input(scheduler, value: str, from_zone: str) -> None:
    with pytest.raises(HTTPException) as exception_info:
        convert_timezone(ConvertTimezoneRequest(value=value, from_zone=from_zone, to_zone='UTC'), scheduler=scheduler)

    assert exception_info.value.status_code == 400


def test_list_timezones_route() -> None:
    zones = list_timezones(at=datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))

    buenos_aires = next(zone for zone in zones if zone['identifier'] == 'America/Buenos_Aires')
    assert buenos_aires['offset_minutes'] == -180


@pytest.mark.parametrize(
    ('error', 'status_code'),
    [
        (BackingStoreTimeout('Backing store did not respond in time.'), 503),
        (SchedulingError('Unexpected'), 500),
    ],
)
def test_to_http_exception_maps_transient_and_unknown_errors(error: SchedulingError, status_code: int) -> None:
    assert to_http_exception(error).status_code == status_code


def test_app_mounts_scheduling_routes() -> None:
    from scheduling.main import app, root

    paths = {route.path for route in app.routes}

    assert '/scheduling/slots/{slot_id}/reserve' in paths
    assert '/scheduling/timezones/convert' in paths
    assert root()['status'] == 'Scheduling API Running'


def test_dst_transitions_route() -> None:
    transitions = get_dst_transitions('Europe/Madrid', year=2026)

    assert [transition['kind'] for transition in transitions] == ['spring_forward', 'fall_back']
    assert transitions[0]['instant'] == '2026-03-29T01:00:00+00:00'

    with pytest.raises(HTTPException) as exception_info:
        get_dst_transitions('Mars/Olympus_Mons', year=2026)
    assert exception_info.value.status_code == 400


def test_conflict_statistics_route_rejects_reversed_range(scheduler) -> None:
    start = datetime(2026, 3, 10, tzinfo=timezone.utc)

    with pytest.raises(HTTPException) as exception_info:
        get_conflict_statistics('pro-1', start=start, end=start - timedelta(days=1), scheduler=scheduler)

    assert exception_info.value.status_code == 400

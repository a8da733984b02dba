from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator

from scheduling.core.errors import (
    AlreadyBookedError,
    AppointmentNotFound,
    BackingStoreTimeout,
    ConfigNotFound,
    ConflictError,
    InvalidDateRange,
    InvalidRecurrenceConfig,
    InvalidTimezone,
    SchedulingError,
    SlotNotFound,
)
from scheduling.database import SessionLocal
from scheduling.models.availability import AvailabilityConfig, BlockedPeriod
from scheduling.services import timezones
from scheduling.services.collaborators import LoggingAuditSink, LoggingNotificationDispatcher
from scheduling.services.conflicts import ENTITY_TYPES, Candidate
from scheduling.services.recurrence import RECURRENCE_CUSTOM, RECURRENCE_DAILY, RECURRENCE_WEEKLY
from scheduling.services.scheduler import Scheduler
from scheduling.services.sql_store import SqlAlchemyStore

router = APIRouter(tags=['scheduling'])

RECURRENCE_TYPES = (RECURRENCE_DAILY, RECURRENCE_WEEKLY, RECURRENCE_CUSTOM)

ERROR_STATUS_CODES = (
    (InvalidTimezone, status.HTTP_400_BAD_REQUEST),
    (InvalidRecurrenceConfig, status.HTTP_400_BAD_REQUEST),
    (InvalidDateRange, status.HTTP_400_BAD_REQUEST),
    (SlotNotFound, status.HTTP_404_NOT_FOUND),
    (AppointmentNotFound, status.HTTP_404_NOT_FOUND),
    (ConfigNotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyBookedError, status.HTTP_409_CONFLICT),
    (BackingStoreTimeout, status.HTTP_503_SERVICE_UNAVAILABLE),
)

notification_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='scheduling-notify')
_scheduler: Scheduler | None = None


def _required_text(value: str, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f'{label} is required.')
    return normalized


class CreateConfigRequest(BaseModel):
    professional_id: str
    timezone: str
    local_start_time: time
    local_end_time: time
    slot_duration_minutes: int
    recurrence_type: str
    recurrence_params: dict = {}
    is_active: bool = True

    @field_validator('professional_id')
    @classmethod
    def validate_professional_id(cls, value: str) -> str:
        return _required_text(value, 'Professional id')

    @field_validator('recurrence_type')
    @classmethod
    def validate_recurrence_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in RECURRENCE_TYPES:
            raise ValueError(f'Recurrence type must be one of: {", ".join(RECURRENCE_TYPES)}.')
        return normalized

    @field_validator('slot_duration_minutes')
    @classmethod
    def validate_slot_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError('Slot duration must be a positive number of minutes.')
        return value


class ConfigResponse(BaseModel):
    id: str
    professional_id: str
    timezone: str
    local_start_time: time
    local_end_time: time
    slot_duration_minutes: int
    recurrence_type: str
    recurrence_params: dict
    is_active: bool

    class Config:
        from_attributes = True


class ExpandRequest(BaseModel):
    range_start: date
    range_end: date
    persist: bool = False


class SlotResponse(BaseModel):
    id: str | None = None
    professional_id: str
    config_id: str | None = None
    start_instant: datetime
    end_instant: datetime
    local_start_time: str
    local_end_time: str
    timezone: str
    status: str
    booked_by: str | None = None
    booked_at: datetime | None = None

    class Config:
        from_attributes = True


class ExpandResponse(BaseModel):
    config_id: str
    persisted: bool
    total: int
    slots: list[SlotResponse]


class CreateBlockedPeriodRequest(BaseModel):
    professional_id: str
    start_instant: datetime
    end_instant: datetime
    timezone: str
    reason: str | None = None
    created_by: str | None = None
    force: bool = False

    @field_validator('professional_id')
    @classmethod
    def validate_professional_id(cls, value: str) -> str:
        return _required_text(value, 'Professional id')


class BlockedPeriodResponse(BaseModel):
    id: str
    professional_id: str
    start_instant: datetime
    end_instant: datetime
    timezone: str
    is_active: bool
    reason: str | None = None
    created_by: str | None = None

    class Config:
        from_attributes = True


class ConflictCheckRequest(BaseModel):
    entity_type: str = 'appointment'
    professional_id: str
    start: datetime
    end: datetime
    timezone: str | None = None
    client_id: str | None = None
    slot_id: str | None = None
    config_id: str | None = None
    appointment_id: str | None = None
    now: datetime | None = None

    @field_validator('entity_type')
    @classmethod
    def validate_entity_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ENTITY_TYPES:
            raise ValueError(f'Entity type must be one of: {", ".join(ENTITY_TYPES)}.')
        return normalized


class ReserveSlotRequest(BaseModel):
    client_id: str

    @field_validator('client_id')
    @classmethod
    def validate_client_id(cls, value: str) -> str:
        return _required_text(value, 'Client id')


class CancelAppointmentRequest(BaseModel):
    actor_id: str
    reason: str | None = None

    @field_validator('actor_id')
    @classmethod
    def validate_actor_id(cls, value: str) -> str:
        return _required_text(value, 'Actor id')


class CancelSlotRequest(BaseModel):
    actor_id: str

    @field_validator('actor_id')
    @classmethod
    def validate_actor_id(cls, value: str) -> str:
        return _required_text(value, 'Actor id')


class AppointmentResponse(BaseModel):
    id: str
    client_id: str
    professional_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    timezone: str
    status: str
    source_slot_id: str | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None

    class Config:
        from_attributes = True


class ConvertTimezoneRequest(BaseModel):
    value: str
    from_zone: str
    to_zone: str


def get_scheduler() -> Scheduler:
    global _scheduler

    if _scheduler is None:
        _scheduler = Scheduler(
            SqlAlchemyStore(SessionLocal),
            notifier=LoggingNotificationDispatcher(),
            audit_sink=LoggingAuditSink(),
            executor=notification_executor,
        )
    return _scheduler


def to_http_exception(exc: SchedulingError) -> HTTPException:
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={'message': str(exc), 'report': exc.report.to_dict()},
        )

    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))

    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def as_instant(value: datetime, zone_name: str | None) -> datetime:
    """Naive request datetimes are wall-clock readings in ``zone_name`` (UTC when absent)."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    if zone_name:
        return timezones.to_utc(value, zone_name)
    return value.replace(tzinfo=timezone.utc)


@router.post('/configs', response_model=ConfigResponse, status_code=status.HTTP_201_CREATED)
def create_config(data: CreateConfigRequest, scheduler: Scheduler = Depends(get_scheduler)):
    availability_config = AvailabilityConfig(
        professional_id=data.professional_id,
        timezone=data.timezone,
        local_start_time=data.local_start_time,
        local_end_time=data.local_end_time,
        slot_duration_minutes=data.slot_duration_minutes,
        recurrence_type=data.recurrence_type,
        recurrence_params=data.recurrence_params,
        is_active=data.is_active,
    )
    try:
        return scheduler.create_config(availability_config)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/configs/{config_id}/expand', response_model=ExpandResponse)
def expand_config(config_id: str, data: ExpandRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        if data.persist:
            slots = scheduler.generate_slots(config_id, data.range_start, data.range_end)
        else:
            availability_config = scheduler.get_config(config_id)
            slots = list(scheduler.expand_slots(availability_config, data.range_start, data.range_end))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return ExpandResponse(
        config_id=config_id,
        persisted=data.persist,
        total=len(slots),
        slots=[SlotResponse.model_validate(slot) for slot in slots],
    )


@router.post('/blocked-periods', response_model=BlockedPeriodResponse, status_code=status.HTTP_201_CREATED)
def create_blocked_period(data: CreateBlockedPeriodRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        period = BlockedPeriod(
            professional_id=data.professional_id,
            start_instant=as_instant(data.start_instant, data.timezone),
            end_instant=as_instant(data.end_instant, data.timezone),
            timezone=data.timezone,
            is_active=True,
            reason=data.reason,
            created_by=data.created_by,
        )
        created, _report = scheduler.create_blocked_period(period, force=data.force)
        return created
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/conflicts/check')
def check_conflicts(data: ConflictCheckRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        candidate = Candidate(
            professional_id=data.professional_id,
            start=as_instant(data.start, data.timezone),
            end=as_instant(data.end, data.timezone),
            timezone=data.timezone,
            client_id=data.client_id,
            slot_id=data.slot_id,
            config_id=data.config_id,
            appointment_id=data.appointment_id,
        )
        now = as_instant(data.now, None) if data.now is not None else None
        return scheduler.check_conflicts(candidate, data.entity_type, now=now).to_dict()
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/slots/{slot_id}/reserve', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def reserve_slot(slot_id: str, data: ReserveSlotRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        return scheduler.reserve_slot(slot_id, data.client_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/slots/{slot_id}/cancel', response_model=SlotResponse)
def cancel_slot(slot_id: str, data: CancelSlotRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        return scheduler.cancel_slot(slot_id, data.actor_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/appointments/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    data: CancelAppointmentRequest,
    scheduler: Scheduler = Depends(get_scheduler),
):
    try:
        return scheduler.cancel_appointment(appointment_id, data.actor_id, reason=data.reason)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/professionals/{professional_id}/statistics')
def get_slot_statistics(
    professional_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    scheduler: Scheduler = Depends(get_scheduler),
):
    try:
        return scheduler.slot_statistics(professional_id, start, end)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/professionals/{professional_id}/conflict-statistics')
def get_conflict_statistics(
    professional_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    scheduler: Scheduler = Depends(get_scheduler),
):
    try:
        return scheduler.conflict_statistics(professional_id, start, end)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/timezones/{zone_name:path}/transitions')
def get_dst_transitions(zone_name: str, year: int = Query(..., ge=1900, le=2100)):
    try:
        transitions = timezones.dst_transitions(zone_name, year)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    return [transition.to_dict() for transition in transitions]


@router.post('/timezones/convert')
def convert_timezone(data: ConvertTimezoneRequest, scheduler: Scheduler = Depends(get_scheduler)):
    try:
        result = scheduler.convert_timezone(data.value, data.from_zone, data.to_zone)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return timezones.format_for_api(result)


@router.get('/timezones')
def list_timezones(at: datetime | None = Query(None)):
    return [timezones.timezone_info(zone_name, at) for zone_name in timezones.list_timezones()]

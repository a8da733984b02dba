"""Entry points the HTTP layer and other callers use.

Wires the expander, the conflict detector and the booking arbiter to one
store that implements every store interface.
"""

import logging
from concurrent.futures import Executor
from datetime import date, datetime, timezone

from scheduling.core.errors import ConfigNotFound, ConflictError, InvalidDateRange
from scheduling.models.appointment import Appointment
from scheduling.models.availability import (
    SLOT_AVAILABLE,
    SLOT_BLOCKED,
    SLOT_BOOKED,
    SLOT_CANCELLED,
    AvailabilityConfig,
    AvailabilitySlot,
    BlockedPeriod,
)
from scheduling.services import timezones
from scheduling.services.booking import BookingArbiter
from scheduling.services.collaborators import AccountDirectory, AuditSink, NotificationDispatcher
from scheduling.services.conflicts import (
    ENTITY_APPOINTMENT,
    ENTITY_BLOCK,
    BookingPolicy,
    Candidate,
    ConflictDetector,
    ConflictReport,
)
from scheduling.services.recurrence import RecurrenceExpander, SlotExpansion, validate_config
from scheduling.services.stores import overlaps

logger = logging.getLogger(__name__)


class Scheduler:

    def __init__(
        self,
        store,
        account_directory: AccountDirectory | None = None,
        notifier: NotificationDispatcher | None = None,
        audit_sink: AuditSink | None = None,
        policy: BookingPolicy | None = None,
        executor: Executor | None = None,
        detector: ConflictDetector | None = None,
    ):
        self.store = store
        self.expander = RecurrenceExpander(account_directory)
        self.detector = detector or ConflictDetector(store, store, store, store, account_directory)
        self.arbiter = BookingArbiter(
            store,
            store,
            self.detector,
            notifier=notifier,
            audit_sink=audit_sink,
            policy=policy,
            executor=executor,
        )

    def create_config(self, availability_config: AvailabilityConfig) -> AvailabilityConfig:
        validate_config(availability_config)
        availability_config.timezone = self.expander.resolve_zone(availability_config)
        if availability_config.is_active is None:
            availability_config.is_active = True
        return self.store.add_config(availability_config)

    def get_config(self, config_id: str) -> AvailabilityConfig:
        availability_config = self.store.get_config(config_id)
        if availability_config is None:
            raise ConfigNotFound(config_id)
        return availability_config

    def expand_slots(
        self,
        availability_config: AvailabilityConfig,
        range_start: date | datetime,
        range_end: date | datetime,
    ) -> SlotExpansion:
        return self.expander.expand(availability_config, range_start, range_end)

    def generate_slots(
        self,
        config_id: str,
        range_start: date | datetime,
        range_end: date | datetime,
    ) -> list[AvailabilitySlot]:
        """Expand a stored config and persist the slots that do not exist yet."""
        availability_config = self.get_config(config_id)
        inserted = self.store.add_slots(self.expand_slots(availability_config, range_start, range_end))
        logger.info(
            'Generated %d new slots for config %s between %s and %s',
            len(inserted), config_id, range_start, range_end,
        )
        return inserted

    def check_conflicts(
        self,
        candidate: Candidate,
        entity_type: str = ENTITY_APPOINTMENT,
        now: datetime | None = None,
    ) -> ConflictReport:
        return self.detector.check(candidate, entity_type, now=now)

    def create_blocked_period(
        self,
        period: BlockedPeriod,
        force: bool = False,
        now: datetime | None = None,
    ) -> tuple[BlockedPeriod, ConflictReport]:
        """Store a blocked period. Covering a confirmed appointment needs ``force``."""
        timezones.get_zone(period.timezone)
        if period.end_instant <= period.start_instant:
            raise InvalidDateRange('Blocked period end must be after its start.')

        report = self.detector.check(Candidate.from_blocked_period(period), ENTITY_BLOCK, now=now)
        if not report.valid and not force:
            raise ConflictError(report)
        if period.is_active is None:
            period.is_active = True
        return self.store.add_blocked_period(period), report

    def reserve_slot(self, slot_id: str, client_id: str, now: datetime | None = None) -> Appointment:
        return self.arbiter.reserve(slot_id, client_id, now=now)

    def cancel_appointment(
        self,
        appointment_id: str,
        actor_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Appointment:
        return self.arbiter.cancel(appointment_id, actor_id, reason=reason, now=now)

    def cancel_slot(self, slot_id: str, actor_id: str, now: datetime | None = None) -> AvailabilitySlot:
        return self.arbiter.cancel_slot(slot_id, actor_id, now=now)

    def convert_timezone(self, value: datetime | str, from_zone: str, to_zone: str) -> timezones.ConversionResult:
        return timezones.convert(value, from_zone, to_zone)

    def slot_statistics(self, professional_id: str, start: datetime, end: datetime) -> dict:
        start, end = _utc_range(start, end)
        counts = self.store.count_slots_by_status(professional_id, start, end)
        total = sum(counts.values())
        booked = counts.get(SLOT_BOOKED, 0)
        return {
            'professional_id': professional_id,
            'total_slots': total,
            'available_slots': counts.get(SLOT_AVAILABLE, 0),
            'booked_slots': booked,
            'blocked_slots': counts.get(SLOT_BLOCKED, 0),
            'cancelled_slots': counts.get(SLOT_CANCELLED, 0),
            'utilization_rate': round(booked / total * 100, 2) if total else 0.0,
        }

    def conflict_statistics(self, professional_id: str, start: datetime, end: datetime) -> dict:
        """Slots, confirmed appointments and active blocks in a window, and how many collide."""
        start, end = _utc_range(start, end)

        slots = self.store.find_slots(professional_id, start, end)
        appointments = self.store.find_confirmed_appointments(start, end, professional_id=professional_id)
        blocks = self.store.find_active_blocked_periods(professional_id, start, end)
        in_blocked_time = [
            appointment for appointment in appointments
            if any(
                overlaps(appointment.scheduled_start, appointment.scheduled_end, block.start_instant, block.end_instant)
                for block in blocks
            )
        ]
        return {
            'professional_id': professional_id,
            'period': {'start': start.isoformat(), 'end': end.isoformat()},
            'total_slots': len(slots),
            'total_appointments': len(appointments),
            'total_blocks': len(blocks),
            'appointments_in_blocked_time': len(in_blocked_time),
        }


def _utc_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    if end <= start:
        raise InvalidDateRange('Statistics range end must be after its start.')
    return start, end

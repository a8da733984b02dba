"""
Conflict detection for slots, appointment requests and blocked periods.

The detector only reads from the stores. Every check runs on every call and
contributes its own entries, so a caller always sees the complete set of
problems for a candidate. Business-rule violations are data, never raised.

Check order for slots and appointments:
    slot_overlap, double_booking, blocked_time, resource_constraint,
    business_rule_violation (min advance, max advance, business hours, duration,
    DST change)

Check order for blocks:
    double_booking, resource_constraint
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from scheduling.core import config
from scheduling.core.errors import InvalidDateRange, InvalidTimezone
from scheduling.models.appointment import Appointment
from scheduling.models.availability import (
    SLOT_AVAILABLE,
    SLOT_BLOCKED,
    SLOT_CANCELLED,
    AvailabilitySlot,
    BlockedPeriod,
)
from scheduling.services import timezones
from scheduling.services.collaborators import AccountDirectory
from scheduling.services.recurrence import parse_local_time
from scheduling.services.stores import (
    AppointmentStore,
    AvailabilityConfigStore,
    BlockedPeriodStore,
    SlotStore,
)

logger = logging.getLogger(__name__)

SEVERITY_CRITICAL = 'critical'
SEVERITY_HIGH = 'high'
SEVERITY_MEDIUM = 'medium'
SEVERITY_LOW = 'low'

CONFLICT_SLOT_OVERLAP = 'slot_overlap'
CONFLICT_DOUBLE_BOOKING = 'double_booking'
CONFLICT_BLOCKED_TIME = 'blocked_time'
CONFLICT_RESOURCE_CONSTRAINT = 'resource_constraint'
CONFLICT_BUSINESS_RULE = 'business_rule_violation'

ENTITY_SLOT = 'slot'
ENTITY_APPOINTMENT = 'appointment'
ENTITY_BLOCK = 'block'
ENTITY_TYPES = (ENTITY_SLOT, ENTITY_APPOINTMENT, ENTITY_BLOCK)


@dataclass(frozen=True)
class Conflict:
    type: str
    severity: str
    message: str
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BookingPolicy:
    """Which severities reject a reservation."""
    blocking_severities: frozenset[str] = frozenset({SEVERITY_CRITICAL, SEVERITY_HIGH})

    @classmethod
    def strict(cls) -> 'BookingPolicy':
        return cls(frozenset(config.SEVERITY_LEVELS))

    @classmethod
    def from_settings(cls) -> 'BookingPolicy':
        return cls(frozenset(config.BLOCKING_SEVERITIES))


@dataclass
class ConflictReport:
    conflicts: list[Conflict] = field(default_factory=list)

    def count(self, severity: str) -> int:
        return sum(1 for conflict in self.conflicts if conflict.severity == severity)

    @property
    def summary(self) -> dict[str, int]:
        return {
            'total_conflicts': len(self.conflicts),
            'critical_count': self.count(SEVERITY_CRITICAL),
            'high_count': self.count(SEVERITY_HIGH),
            'medium_count': self.count(SEVERITY_MEDIUM),
            'low_count': self.count(SEVERITY_LOW),
        }

    @property
    def valid(self) -> bool:
        return not any(conflict.severity in (SEVERITY_CRITICAL, SEVERITY_HIGH) for conflict in self.conflicts)

    def blocks(self, policy: BookingPolicy) -> bool:
        return any(conflict.severity in policy.blocking_severities for conflict in self.conflicts)

    def of_type(self, conflict_type: str) -> list[Conflict]:
        return [conflict for conflict in self.conflicts if conflict.type == conflict_type]

    def to_dict(self) -> dict:
        return {
            'valid': self.valid,
            'conflicts': [asdict(conflict) for conflict in self.conflicts],
            'summary': self.summary,
        }


@dataclass(frozen=True)
class Candidate:
    """A time window to validate: a slot, a proposed appointment or a proposed block."""
    professional_id: str
    start: datetime
    end: datetime
    timezone: str | None = None
    client_id: str | None = None
    slot_id: str | None = None
    config_id: str | None = None
    appointment_id: str | None = None

    @classmethod
    def from_slot(cls, slot: AvailabilitySlot, client_id: str | None = None) -> 'Candidate':
        return cls(
            professional_id=slot.professional_id,
            start=slot.start_instant,
            end=slot.end_instant,
            timezone=slot.timezone,
            client_id=client_id,
            slot_id=slot.id,
            config_id=slot.config_id,
        )

    @classmethod
    def from_blocked_period(cls, period: BlockedPeriod) -> 'Candidate':
        return cls(
            professional_id=period.professional_id,
            start=period.start_instant,
            end=period.end_instant,
            timezone=period.timezone,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _window(start: datetime, end: datetime) -> dict:
    return {'start': start.isoformat(), 'end': end.isoformat()}


class ConflictDetector:

    def __init__(
        self,
        slots: SlotStore,
        blocked_periods: BlockedPeriodStore,
        appointments: AppointmentStore,
        configs: AvailabilityConfigStore,
        account_directory: AccountDirectory | None = None,
        min_advance_hours: int = config.MIN_ADVANCE_HOURS,
        max_advance_days: int = config.MAX_ADVANCE_DAYS,
        max_appointment_hours: int = config.MAX_APPOINTMENT_HOURS,
        check_client_conflicts: bool = config.CHECK_CLIENT_CONFLICTS,
        fallback_timezone: str = config.DEFAULT_TIMEZONE,
    ):
        self.slots = slots
        self.blocked_periods = blocked_periods
        self.appointments = appointments
        self.configs = configs
        self.account_directory = account_directory
        self.min_advance = timedelta(hours=min_advance_hours)
        self.max_advance = timedelta(days=max_advance_days)
        self.max_duration = timedelta(hours=max_appointment_hours)
        self.check_client_conflicts = check_client_conflicts
        self.fallback_timezone = fallback_timezone

    def check(self, candidate: Candidate, entity_type: str = ENTITY_APPOINTMENT, now: datetime | None = None) -> ConflictReport:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f'Unknown entity type: {entity_type!r}')

        start = _as_utc(candidate.start)
        end = _as_utc(candidate.end)
        if end <= start:
            raise InvalidDateRange('Candidate end must be after its start.')
        now = _as_utc(now) if now is not None else datetime.now(timezone.utc)

        report = ConflictReport()
        if entity_type == ENTITY_BLOCK:
            report.conflicts.extend(self._covered_appointments(candidate, start, end))
            report.conflicts.extend(self._shadowed_slots(candidate, start, end))
        else:
            if entity_type == ENTITY_SLOT or candidate.slot_id is not None:
                report.conflicts.extend(self._slot_overlap(candidate, start, end))
            report.conflicts.extend(self._double_booking(candidate, start, end))
            report.conflicts.extend(self._blocked_time(candidate, start, end))
            if entity_type == ENTITY_APPOINTMENT and candidate.slot_id is not None:
                report.conflicts.extend(self._source_slot_state(candidate))
            report.conflicts.extend(self._business_rules(candidate, start, end, now))

        if report.conflicts:
            logger.debug(
                'Conflict check for %s %s-%s (%s): %s',
                candidate.professional_id, start.isoformat(), end.isoformat(), entity_type, report.summary,
            )
        return report

    def _slot_overlap(self, candidate: Candidate, start: datetime, end: datetime) -> list[Conflict]:
        overlapping = [
            slot for slot in self.slots.find_slots(candidate.professional_id, start, end, statuses=[SLOT_AVAILABLE])
            if slot.id != candidate.slot_id
            and (candidate.config_id is None or slot.config_id != candidate.config_id)
        ]
        if not overlapping:
            return []
        return [Conflict(
            type=CONFLICT_SLOT_OVERLAP,
            severity=SEVERITY_HIGH,
            message=f'Slot overlaps with {len(overlapping)} existing slot(s)',
            details={'overlapping_slots': [{'id': slot.id, **_window(slot.start_instant, slot.end_instant)} for slot in overlapping]},
        )]

    def _double_booking(self, candidate: Candidate, start: datetime, end: datetime) -> list[Conflict]:
        conflicts = []

        professional_hits = self.appointments.find_confirmed_appointments(
            start, end, professional_id=candidate.professional_id, exclude_id=candidate.appointment_id,
        )
        if professional_hits:
            conflicts.append(Conflict(
                type=CONFLICT_DOUBLE_BOOKING,
                severity=SEVERITY_CRITICAL,
                message=f'Professional has {len(professional_hits)} conflicting appointment(s)',
                details={'party': 'professional', 'appointments': self._describe(professional_hits)},
            ))

        if candidate.client_id and self.check_client_conflicts:
            client_hits = self.appointments.find_confirmed_appointments(
                start, end, client_id=candidate.client_id, exclude_id=candidate.appointment_id,
            )
            if client_hits:
                conflicts.append(Conflict(
                    type=CONFLICT_DOUBLE_BOOKING,
                    severity=SEVERITY_CRITICAL,
                    message=f'Client has {len(client_hits)} overlapping appointment(s)',
                    details={'party': 'client', 'appointments': self._describe(client_hits)},
                ))
        return conflicts

    def _blocked_time(self, candidate: Candidate, start: datetime, end: datetime) -> list[Conflict]:
        periods = self.blocked_periods.find_active_blocked_periods(candidate.professional_id, start, end)
        if not periods:
            return []
        return [Conflict(
            type=CONFLICT_BLOCKED_TIME,
            severity=SEVERITY_CRITICAL,
            message=f'Conflicts with {len(periods)} blocked time period(s)',
            details={'blocked_periods': [
                {'id': period.id, 'reason': period.reason, **_window(period.start_instant, period.end_instant)}
                for period in periods
            ]},
        )]

    def _source_slot_state(self, candidate: Candidate) -> list[Conflict]:
        slot = self.slots.get_slot(candidate.slot_id)
        if slot is not None and slot.status not in (SLOT_BLOCKED, SLOT_CANCELLED):
            return []
        return [Conflict(
            type=CONFLICT_RESOURCE_CONSTRAINT,
            severity=SEVERITY_CRITICAL,
            message='Selected time slot is no longer available',
            details={'slot_id': candidate.slot_id, 'slot_status': slot.status if slot is not None else None},
        )]

    def _covered_appointments(self, candidate: Candidate, start: datetime, end: datetime) -> list[Conflict]:
        covered = self.appointments.find_confirmed_appointments(start, end, professional_id=candidate.professional_id)
        if not covered:
            return []
        return [Conflict(
            type=CONFLICT_DOUBLE_BOOKING,
            severity=SEVERITY_CRITICAL,
            message=f'Block conflicts with {len(covered)} existing appointment(s)',
            details={'appointments': self._describe(covered)},
        )]

    def _shadowed_slots(self, candidate: Candidate, start: datetime, end: datetime) -> list[Conflict]:
        shadowed = self.slots.find_slots(candidate.professional_id, start, end, statuses=[SLOT_AVAILABLE])
        if not shadowed:
            return []
        return [Conflict(
            type=CONFLICT_RESOURCE_CONSTRAINT,
            severity=SEVERITY_MEDIUM,
            message=f'Block will remove {len(shadowed)} available time slot(s)',
            details={'slot_ids': [slot.id for slot in shadowed]},
        )]

    def _business_rules(self, candidate: Candidate, start: datetime, end: datetime, now: datetime) -> list[Conflict]:
        conflicts = []

        if start < now + self.min_advance:
            hours = int(self.min_advance.total_seconds() // 3600)
            conflicts.append(Conflict(
                type=CONFLICT_BUSINESS_RULE,
                severity=SEVERITY_MEDIUM,
                message=f'Starts too soon (less than {hours} hours advance notice)',
                details={'rule': 'min_advance', 'min_advance_hours': hours, 'now': now.isoformat()},
            ))

        if start > now + self.max_advance:
            conflicts.append(Conflict(
                type=CONFLICT_BUSINESS_RULE,
                severity=SEVERITY_LOW,
                message=f'Starts too far in advance (more than {self.max_advance.days} days)',
                details={'rule': 'max_advance', 'max_advance_days': self.max_advance.days, 'now': now.isoformat()},
            ))

        if not self._within_business_hours(candidate.professional_id, start, end):
            conflicts.append(Conflict(
                type=CONFLICT_BUSINESS_RULE,
                severity=SEVERITY_MEDIUM,
                message='Outside the professional\'s declared availability hours',
                details={'rule': 'business_hours', **_window(start, end)},
            ))

        if end - start > self.max_duration:
            hours = int(self.max_duration.total_seconds() // 3600)
            conflicts.append(Conflict(
                type=CONFLICT_BUSINESS_RULE,
                severity=SEVERITY_HIGH,
                message=f'Duration exceeds {hours} hours',
                details={'rule': 'max_duration', 'max_hours': hours},
            ))

        transitions = self._dst_transitions(candidate, start, end)
        if transitions:
            conflicts.append(Conflict(
                type=CONFLICT_BUSINESS_RULE,
                severity=SEVERITY_LOW,
                message='Crosses a daylight saving time change; wall-clock length differs from real length',
                details={'rule': 'dst_transition', 'transitions': [transition.to_dict() for transition in transitions]},
            ))

        return conflicts

    def _dst_transitions(self, candidate: Candidate, start: datetime, end: datetime) -> list[timezones.DstTransition]:
        zone_name = candidate.timezone or self.fallback_timezone
        if not timezones.is_valid_zone(zone_name):
            return []
        return timezones.transitions_between(start, end, zone_name)

    def _config_zone(self, availability_config) -> str:
        account_default = None
        if self.account_directory is not None:
            account_default = self.account_directory.get_professional_timezone_default(
                availability_config.professional_id
            )
        try:
            return timezones.resolve_zone_name(availability_config.timezone, account_default, self.fallback_timezone)
        except InvalidTimezone:
            logger.warning(
                'No usable timezone for config %s, using UTC for the business hours check',
                availability_config.id,
            )
            return 'UTC'

    def _within_business_hours(self, professional_id: str, start: datetime, end: datetime) -> bool:
        for availability_config in self.configs.find_active_configs(professional_id):
            zone_name = self._config_zone(availability_config)
            local_start = timezones.to_local(start, zone_name)
            local_end = timezones.to_local(end, zone_name)
            if local_start.date() != local_end.date():
                continue
            window_start = parse_local_time(availability_config.local_start_time)
            window_end = parse_local_time(availability_config.local_end_time)
            if window_start <= local_start.time() and local_end.time() <= window_end:
                return True
        return False

    @staticmethod
    def _describe(appointments: list[Appointment]) -> list[dict]:
        return [
            {
                'id': appointment.id,
                'client_id': appointment.client_id,
                'professional_id': appointment.professional_id,
                **_window(appointment.scheduled_start, appointment.scheduled_end),
            }
            for appointment in appointments
        ]

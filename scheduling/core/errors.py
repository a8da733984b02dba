"""Error taxonomy shared by the scheduling services.

Business-rule violations are never raised; they are reported as data in a
ConflictReport. Only structurally invalid input, missing entities, lost
races and transient store failures are exceptions.
"""


class SchedulingError(Exception):
    """Base class for every error raised by the scheduling core."""


class InvalidTimezone(SchedulingError):
    def __init__(self, zone_name: str | None):
        self.zone_name = zone_name
        super().__init__(f"Unknown timezone: {zone_name!r}")


class InvalidRecurrenceConfig(SchedulingError):
    pass


class InvalidDateRange(SchedulingError):
    pass


class ConflictError(SchedulingError):
    """The candidate failed validation; ``report`` holds every conflict found."""

    def __init__(self, report):
        self.report = report
        messages = '; '.join(conflict.message for conflict in report.conflicts)
        super().__init__(messages or 'Candidate rejected by booking policy.')


class AlreadyBookedError(SchedulingError):
    def __init__(self, slot_id: str):
        self.slot_id = slot_id
        super().__init__(f"Slot {slot_id} is no longer available.")


class SlotNotFound(SchedulingError):
    def __init__(self, slot_id: str):
        self.slot_id = slot_id
        super().__init__(f"Slot {slot_id} not found.")


class AppointmentNotFound(SchedulingError):
    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found.")


class ConfigNotFound(SchedulingError):
    def __init__(self, config_id: str):
        self.config_id = config_id
        super().__init__(f"Availability configuration {config_id} not found.")


class BackingStoreTimeout(SchedulingError):
    """Transient store failure. The outcome of the call is unknown; re-query state."""

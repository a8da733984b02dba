"""Store interfaces used by the scheduling services, plus an in-memory store.

Every write that changes a slot or appointment status is a single
compare-and-swap: it succeeds only if the row is still in the expected
state, and reports whether it did.
"""

from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Iterable

from scheduling.core import config
from scheduling.core.errors import BackingStoreTimeout
from scheduling.models.appointment import APPOINTMENT_CANCELLED, APPOINTMENT_CONFIRMED, Appointment
from scheduling.models.availability import (
    SLOT_AVAILABLE,
    SLOT_BOOKED,
    SLOT_CANCELLED,
    AvailabilityConfig,
    AvailabilitySlot,
    BlockedPeriod,
    new_id,
)


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval intersection; touching endpoints do not overlap."""
    return start_a < end_b and start_b < end_a


class SlotStore(ABC):

    @abstractmethod
    def add_slots(self, slots: Iterable[AvailabilitySlot]) -> list[AvailabilitySlot]:
        """Insert slots, skipping any whose (professional, start, end) already exists."""

    @abstractmethod
    def get_slot(self, slot_id: str) -> AvailabilitySlot | None:
        ...

    @abstractmethod
    def find_slots(
        self,
        professional_id: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[str] | None = None,
    ) -> list[AvailabilitySlot]:
        """Slots of the professional overlapping ``[start, end)``, ordered by start."""

    @abstractmethod
    def book_slot(self, slot_id: str, client_id: str, appointment_id: str, booked_at: datetime) -> bool:
        """available -> booked. False when the slot was not available at write time."""

    @abstractmethod
    def release_slot(self, slot_id: str, appointment_id: str) -> bool:
        """booked -> available, only while the slot still references ``appointment_id``."""

    @abstractmethod
    def cancel_slot(self, slot_id: str) -> bool:
        """available -> cancelled."""

    @abstractmethod
    def count_slots_by_status(self, professional_id: str, start: datetime, end: datetime) -> dict[str, int]:
        ...


class BlockedPeriodStore(ABC):

    @abstractmethod
    def add_blocked_period(self, period: BlockedPeriod) -> BlockedPeriod:
        ...

    @abstractmethod
    def find_active_blocked_periods(self, professional_id: str, start: datetime, end: datetime) -> list[BlockedPeriod]:
        ...


class AppointmentStore(ABC):

    @abstractmethod
    def add_appointment(self, appointment: Appointment) -> Appointment:
        ...

    @abstractmethod
    def get_appointment(self, appointment_id: str) -> Appointment | None:
        ...

    @abstractmethod
    def find_confirmed_appointments(
        self,
        start: datetime,
        end: datetime,
        professional_id: str | None = None,
        client_id: str | None = None,
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        ...

    @abstractmethod
    def cancel_appointment(
        self,
        appointment_id: str,
        cancelled_by: str,
        cancelled_at: datetime,
        reason: str | None = None,
    ) -> bool:
        """confirmed -> cancelled."""


class AvailabilityConfigStore(ABC):

    @abstractmethod
    def add_config(self, availability_config: AvailabilityConfig) -> AvailabilityConfig:
        ...

    @abstractmethod
    def get_config(self, config_id: str) -> AvailabilityConfig | None:
        ...

    @abstractmethod
    def find_active_configs(self, professional_id: str) -> list[AvailabilityConfig]:
        ...


class InMemoryStore(SlotStore, BlockedPeriodStore, AppointmentStore, AvailabilityConfigStore):
    """Reference store. One lock per store instance serializes the conditional writes."""

    def __init__(self, timeout_seconds: float = config.STORE_TIMEOUT_SECONDS):
        self._timeout = timeout_seconds
        self._lock = Lock()
        self._slots: dict[str, AvailabilitySlot] = {}
        self._slot_keys: set[tuple] = set()
        self._blocked: dict[str, BlockedPeriod] = {}
        self._appointments: dict[str, Appointment] = {}
        self._configs: dict[str, AvailabilityConfig] = {}

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self._timeout):
            raise BackingStoreTimeout('Timed out waiting for the in-memory store lock.')
        try:
            yield
        finally:
            self._lock.release()

    def add_slots(self, slots: Iterable[AvailabilitySlot]) -> list[AvailabilitySlot]:
        inserted = []
        with self._locked():
            for slot in slots:
                if slot.key in self._slot_keys:
                    continue
                if slot.id is None:
                    slot.id = new_id()
                if slot.status is None:
                    slot.status = SLOT_AVAILABLE
                self._slots[slot.id] = slot
                self._slot_keys.add(slot.key)
                inserted.append(slot)
        return inserted

    def get_slot(self, slot_id: str) -> AvailabilitySlot | None:
        with self._locked():
            return self._slots.get(slot_id)

    def find_slots(self, professional_id, start, end, statuses=None):
        wanted = set(statuses) if statuses is not None else None
        with self._locked():
            found = [
                slot for slot in self._slots.values()
                if slot.professional_id == professional_id
                and overlaps(slot.start_instant, slot.end_instant, start, end)
                and (wanted is None or slot.status in wanted)
            ]
        return sorted(found, key=lambda slot: slot.start_instant)

    def book_slot(self, slot_id, client_id, appointment_id, booked_at):
        with self._locked():
            slot = self._slots.get(slot_id)
            if slot is None or slot.status != SLOT_AVAILABLE:
                return False
            slot.status = SLOT_BOOKED
            slot.booked_by = client_id
            slot.booked_at = booked_at
            slot.appointment_id = appointment_id
            return True

    def release_slot(self, slot_id, appointment_id):
        with self._locked():
            slot = self._slots.get(slot_id)
            if slot is None or slot.status != SLOT_BOOKED or slot.appointment_id != appointment_id:
                return False
            slot.status = SLOT_AVAILABLE
            slot.booked_by = None
            slot.booked_at = None
            slot.appointment_id = None
            return True

    def cancel_slot(self, slot_id):
        with self._locked():
            slot = self._slots.get(slot_id)
            if slot is None or slot.status != SLOT_AVAILABLE:
                return False
            slot.status = SLOT_CANCELLED
            return True

    def count_slots_by_status(self, professional_id, start, end):
        with self._locked():
            return dict(Counter(
                slot.status for slot in self._slots.values()
                if slot.professional_id == professional_id
                and overlaps(slot.start_instant, slot.end_instant, start, end)
            ))

    def add_blocked_period(self, period):
        with self._locked():
            if period.id is None:
                period.id = new_id()
            if period.is_active is None:
                period.is_active = True
            self._blocked[period.id] = period
        return period

    def find_active_blocked_periods(self, professional_id, start, end):
        with self._locked():
            found = [
                period for period in self._blocked.values()
                if period.professional_id == professional_id
                and period.is_active
                and overlaps(period.start_instant, period.end_instant, start, end)
            ]
        return sorted(found, key=lambda period: period.start_instant)

    def add_appointment(self, appointment):
        with self._locked():
            if appointment.id is None:
                appointment.id = new_id()
            if appointment.status is None:
                appointment.status = APPOINTMENT_CONFIRMED
            self._appointments[appointment.id] = appointment
        return appointment

    def get_appointment(self, appointment_id):
        with self._locked():
            return self._appointments.get(appointment_id)

    def find_confirmed_appointments(self, start, end, professional_id=None, client_id=None, exclude_id=None):
        with self._locked():
            found = [
                appointment for appointment in self._appointments.values()
                if appointment.status == APPOINTMENT_CONFIRMED
                and appointment.id != exclude_id
                and (professional_id is None or appointment.professional_id == professional_id)
                and (client_id is None or appointment.client_id == client_id)
                and overlaps(appointment.scheduled_start, appointment.scheduled_end, start, end)
            ]
        return sorted(found, key=lambda appointment: appointment.scheduled_start)

    def cancel_appointment(self, appointment_id, cancelled_by, cancelled_at, reason=None):
        with self._locked():
            appointment = self._appointments.get(appointment_id)
            if appointment is None or appointment.status != APPOINTMENT_CONFIRMED:
                return False
            appointment.status = APPOINTMENT_CANCELLED
            appointment.cancelled_by = cancelled_by
            appointment.cancelled_at = cancelled_at
            appointment.cancel_reason = reason
            return True

    def add_config(self, availability_config):
        with self._locked():
            if availability_config.id is None:
                availability_config.id = new_id()
            if availability_config.is_active is None:
                availability_config.is_active = True
            self._configs[availability_config.id] = availability_config
        return availability_config

    def get_config(self, config_id):
        with self._locked():
            return self._configs.get(config_id)

    def find_active_configs(self, professional_id):
        with self._locked():
            return [
                availability_config for availability_config in self._configs.values()
                if availability_config.professional_id == professional_id and availability_config.is_active
            ]

"""
Slot reservation and cancellation.

A reservation is check-then-write: the conflict check is a best-effort read,
and the conditional ``available -> booked`` write on the slot decides who
wins. The arbiter holds no lock of its own.
"""

import logging
from concurrent.futures import Executor
from datetime import datetime, timezone

from scheduling.core.errors import (
    AlreadyBookedError,
    AppointmentNotFound,
    BackingStoreTimeout,
    ConflictError,
    SlotNotFound,
)
from scheduling.models.appointment import APPOINTMENT_CANCELLED, APPOINTMENT_CONFIRMED, Appointment
from scheduling.models.availability import SLOT_BOOKED, SLOT_CANCELLED, AvailabilitySlot, new_id
from scheduling.services.collaborators import AuditEntry, AuditSink, BookingEvent, NotificationDispatcher
from scheduling.services.conflicts import ENTITY_APPOINTMENT, BookingPolicy, Candidate, ConflictDetector
from scheduling.services.stores import AppointmentStore, SlotStore

logger = logging.getLogger(__name__)

EVENT_RESERVED = 'appointment_reserved'
EVENT_CANCELLED = 'appointment_cancelled'


class BookingArbiter:

    def __init__(
        self,
        slots: SlotStore,
        appointments: AppointmentStore,
        detector: ConflictDetector,
        notifier: NotificationDispatcher | None = None,
        audit_sink: AuditSink | None = None,
        policy: BookingPolicy | None = None,
        executor: Executor | None = None,
    ):
        self.slots = slots
        self.appointments = appointments
        self.detector = detector
        self.notifier = notifier
        self.audit_sink = audit_sink
        self.policy = policy or BookingPolicy.from_settings()
        self.executor = executor

    def reserve(self, slot_id: str, client_id: str, now: datetime | None = None) -> Appointment:
        now = now or datetime.now(timezone.utc)

        slot = self.slots.get_slot(slot_id)
        if slot is None:
            raise SlotNotFound(slot_id)
        if slot.status == SLOT_BOOKED:
            raise AlreadyBookedError(slot_id)

        report = self.detector.check(Candidate.from_slot(slot, client_id=client_id), ENTITY_APPOINTMENT, now=now)
        if report.blocks(self.policy):
            # A concurrent winner shows up as a double booking; report it as the lost race it is.
            current = self.slots.get_slot(slot_id)
            if current is not None and current.status == SLOT_BOOKED:
                logger.info('Slot %s was booked while client %s was being checked', slot_id, client_id)
                raise AlreadyBookedError(slot_id)
            raise ConflictError(report)

        appointment_id = new_id()
        if not self.slots.book_slot(slot_id, client_id, appointment_id, now):
            logger.info('Client %s lost the reservation race for slot %s', client_id, slot_id)
            raise AlreadyBookedError(slot_id)

        appointment = Appointment(
            id=appointment_id,
            client_id=client_id,
            professional_id=slot.professional_id,
            scheduled_start=slot.start_instant,
            scheduled_end=slot.end_instant,
            timezone=slot.timezone,
            status=APPOINTMENT_CONFIRMED,
            source_slot_id=slot_id,
            created_at=now,
        )
        appointment = self._store_appointment(appointment, slot_id)

        logger.info('Reserved slot %s for client %s as appointment %s', slot_id, client_id, appointment_id)
        self._notify(EVENT_RESERVED, appointment)
        self._audit(AuditEntry(
            action='reserve',
            actor_id=client_id,
            occurred_at=now,
            outcome=APPOINTMENT_CONFIRMED,
            appointment_id=appointment_id,
            slot_id=slot_id,
        ))
        return appointment

    def cancel(
        self,
        appointment_id: str,
        actor_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Appointment:
        now = now or datetime.now(timezone.utc)

        appointment = self.appointments.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFound(appointment_id)
        if appointment.status == APPOINTMENT_CANCELLED:
            return appointment

        if not self.appointments.cancel_appointment(appointment_id, actor_id, now, reason):
            logger.info('Appointment %s was cancelled concurrently', appointment_id)
            return self.appointments.get_appointment(appointment_id)

        released = False
        if appointment.source_slot_id:
            released = self.slots.release_slot(appointment.source_slot_id, appointment_id)
            if not released:
                logger.info(
                    'Slot %s no longer references appointment %s, leaving it untouched',
                    appointment.source_slot_id,
                    appointment_id,
                )

        cancelled = self.appointments.get_appointment(appointment_id)
        logger.info('Cancelled appointment %s by %s (slot released: %s)', appointment_id, actor_id, released)
        self._notify(EVENT_CANCELLED, cancelled)
        self._audit(AuditEntry(
            action='cancel',
            actor_id=actor_id,
            occurred_at=now,
            outcome=APPOINTMENT_CANCELLED,
            appointment_id=appointment_id,
            slot_id=appointment.source_slot_id,
        ))
        return cancelled

    def cancel_slot(self, slot_id: str, actor_id: str, now: datetime | None = None) -> AvailabilitySlot:
        """Administrative ``available -> cancelled``. Booked slots are refused."""
        now = now or datetime.now(timezone.utc)

        slot = self.slots.get_slot(slot_id)
        if slot is None:
            raise SlotNotFound(slot_id)
        if slot.status == SLOT_CANCELLED:
            return slot

        if not self.slots.cancel_slot(slot_id):
            current = self.slots.get_slot(slot_id)
            if current is not None and current.status == SLOT_BOOKED:
                raise AlreadyBookedError(slot_id)
            return current

        logger.info('Slot %s cancelled by %s', slot_id, actor_id)
        self._audit(AuditEntry(
            action='cancel_slot',
            actor_id=actor_id,
            occurred_at=now,
            outcome=SLOT_CANCELLED,
            slot_id=slot_id,
        ))
        return self.slots.get_slot(slot_id)

    def _store_appointment(self, appointment: Appointment, slot_id: str) -> Appointment:
        """Insert the appointment for a slot this call already booked.

        A definite failure releases the slot. A timeout is an unknown outcome:
        the insert may have committed, so the slot is released only once a
        read shows the appointment does not exist.
        """
        try:
            return self.appointments.add_appointment(appointment)
        except BackingStoreTimeout:
            logger.warning('Storing appointment %s timed out, checking whether it was written', appointment.id)
            try:
                stored = self.appointments.get_appointment(appointment.id)
            except BackingStoreTimeout:
                logger.error(
                    'Outcome of appointment %s unknown, slot %s left booked for it',
                    appointment.id,
                    slot_id,
                )
                raise
            if stored is not None:
                return stored
            self.slots.release_slot(slot_id, appointment.id)
            raise
        except Exception:
            logger.exception('Could not store appointment %s, releasing slot %s', appointment.id, slot_id)
            self.slots.release_slot(slot_id, appointment.id)
            raise

    def _notify(self, kind: str, appointment: Appointment) -> None:
        if self.notifier is None:
            return
        event = BookingEvent(
            kind=kind,
            appointment_id=appointment.id,
            professional_id=appointment.professional_id,
            client_id=appointment.client_id,
            start=appointment.scheduled_start,
            end=appointment.scheduled_end,
        )
        if self.executor is None:
            self._dispatch(event)
            return
        try:
            self.executor.submit(self._dispatch, event)
        except RuntimeError:
            logger.exception('Could not schedule notification for appointment %s', event.appointment_id)

    def _dispatch(self, event: BookingEvent) -> None:
        try:
            self.notifier.dispatch(event)
        except Exception:
            logger.exception('Notification %s failed for appointment %s', event.kind, event.appointment_id)

    def _audit(self, entry: AuditEntry) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(entry)
        except Exception:
            logger.exception('Audit sink failed to record %s for %s', entry.action, entry.actor_id)

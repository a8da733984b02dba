"""SQLAlchemy implementation of the scheduling store interfaces.

Status transitions are single ``UPDATE ... WHERE id = :id AND status = :expected``
statements; the affected-row count decides whether the caller won.
"""

import logging
from contextlib import contextmanager
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from scheduling.core.errors import BackingStoreTimeout
from scheduling.database import SessionLocal
from scheduling.models.appointment import APPOINTMENT_CANCELLED, APPOINTMENT_CONFIRMED, Appointment
from scheduling.models.availability import (
    SLOT_AVAILABLE,
    SLOT_BOOKED,
    SLOT_CANCELLED,
    AvailabilityConfig,
    AvailabilitySlot,
    BlockedPeriod,
)
from scheduling.services.stores import (
    AppointmentStore,
    AvailabilityConfigStore,
    BlockedPeriodStore,
    SlotStore,
)

logger = logging.getLogger(__name__)

# Only waits and lost connections count as timeouts.
TRANSIENT_ERROR_MARKERS = (
    'locked',
    'timeout',
    'timed out',
    'could not connect',
    'connection refused',
    'server closed the connection',
)


def _is_transient(exc: OperationalError) -> bool:
    if exc.connection_invalidated:
        return True
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


class SqlAlchemyStore(SlotStore, BlockedPeriodStore, AppointmentStore, AvailabilityConfigStore):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        session = self._session_factory(expire_on_commit=False)
        try:
            yield session
        except PoolTimeoutError as exc:
            session.rollback()
            raise BackingStoreTimeout('Timed out waiting for a database connection.') from exc
        except OperationalError as exc:
            session.rollback()
            if _is_transient(exc):
                raise BackingStoreTimeout('Backing store did not respond in time.') from exc
            raise
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def add_slots(self, slots: Iterable[AvailabilitySlot]) -> list[AvailabilitySlot]:
        candidates: dict[tuple, AvailabilitySlot] = {}
        for slot in slots:
            candidates.setdefault(slot.key, slot)
        if not candidates:
            return []

        professional_ids = {key[0] for key in candidates}
        earliest = min(key[1] for key in candidates)
        latest = max(key[1] for key in candidates)

        with self._session() as session:
            existing = {
                (row.professional_id, row.start_instant, row.end_instant)
                for row in session.query(
                    AvailabilitySlot.professional_id,
                    AvailabilitySlot.start_instant,
                    AvailabilitySlot.end_instant,
                ).filter(
                    AvailabilitySlot.professional_id.in_(professional_ids),
                    AvailabilitySlot.start_instant >= earliest,
                    AvailabilitySlot.start_instant <= latest,
                )
            }
            new_slots = [slot for key, slot in candidates.items() if key not in existing]
            for slot in new_slots:
                if slot.status is None:
                    slot.status = SLOT_AVAILABLE

            session.add_all(new_slots)
            try:
                session.commit()
                return new_slots
            except IntegrityError:
                # A concurrent generator inserted some of the same windows.
                session.rollback()
                logger.info('Slot batch collided with existing rows, inserting one by one')

            inserted = []
            for slot in new_slots:
                session.add(slot)
                try:
                    session.commit()
                    inserted.append(slot)
                except IntegrityError:
                    session.rollback()
            return inserted

    def get_slot(self, slot_id):
        with self._session() as session:
            return session.get(AvailabilitySlot, slot_id)

    def find_slots(self, professional_id, start, end, statuses=None):
        with self._session() as session:
            query = session.query(AvailabilitySlot).filter(
                AvailabilitySlot.professional_id == professional_id,
                AvailabilitySlot.start_instant < end,
                AvailabilitySlot.end_instant > start,
            )
            if statuses is not None:
                query = query.filter(AvailabilitySlot.status.in_(list(statuses)))
            return query.order_by(AvailabilitySlot.start_instant.asc()).all()

    def book_slot(self, slot_id, client_id, appointment_id, booked_at):
        with self._session() as session:
            updated = session.query(AvailabilitySlot).filter(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.status == SLOT_AVAILABLE,
            ).update(
                {
                    AvailabilitySlot.status: SLOT_BOOKED,
                    AvailabilitySlot.booked_by: client_id,
                    AvailabilitySlot.booked_at: booked_at,
                    AvailabilitySlot.appointment_id: appointment_id,
                },
                synchronize_session=False,
            )
            session.commit()
            return updated == 1

    def release_slot(self, slot_id, appointment_id):
        with self._session() as session:
            updated = session.query(AvailabilitySlot).filter(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.status == SLOT_BOOKED,
                AvailabilitySlot.appointment_id == appointment_id,
            ).update(
                {
                    AvailabilitySlot.status: SLOT_AVAILABLE,
                    AvailabilitySlot.booked_by: None,
                    AvailabilitySlot.booked_at: None,
                    AvailabilitySlot.appointment_id: None,
                },
                synchronize_session=False,
            )
            session.commit()
            return updated == 1

    def cancel_slot(self, slot_id):
        with self._session() as session:
            updated = session.query(AvailabilitySlot).filter(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.status == SLOT_AVAILABLE,
            ).update({AvailabilitySlot.status: SLOT_CANCELLED}, synchronize_session=False)
            session.commit()
            return updated == 1

    def count_slots_by_status(self, professional_id, start, end):
        with self._session() as session:
            rows = session.query(AvailabilitySlot.status, func.count(AvailabilitySlot.id)).filter(
                AvailabilitySlot.professional_id == professional_id,
                AvailabilitySlot.start_instant < end,
                AvailabilitySlot.end_instant > start,
            ).group_by(AvailabilitySlot.status).all()
            return {slot_status: count for slot_status, count in rows}

    def add_blocked_period(self, period):
        with self._session() as session:
            session.add(period)
            session.commit()
            return period

    def find_active_blocked_periods(self, professional_id, start, end):
        with self._session() as session:
            return session.query(BlockedPeriod).filter(
                BlockedPeriod.professional_id == professional_id,
                BlockedPeriod.is_active.is_(True),
                BlockedPeriod.start_instant < end,
                BlockedPeriod.end_instant > start,
            ).order_by(BlockedPeriod.start_instant.asc()).all()

    def add_appointment(self, appointment):
        with self._session() as session:
            session.add(appointment)
            session.commit()
            return appointment

    def get_appointment(self, appointment_id):
        with self._session() as session:
            return session.get(Appointment, appointment_id)

    def find_confirmed_appointments(self, start, end, professional_id=None, client_id=None, exclude_id=None):
        with self._session() as session:
            query = session.query(Appointment).filter(
                Appointment.status == APPOINTMENT_CONFIRMED,
                Appointment.scheduled_start < end,
                Appointment.scheduled_end > start,
            )
            if professional_id is not None:
                query = query.filter(Appointment.professional_id == professional_id)
            if client_id is not None:
                query = query.filter(Appointment.client_id == client_id)
            if exclude_id is not None:
                query = query.filter(Appointment.id != exclude_id)
            return query.order_by(Appointment.scheduled_start.asc()).all()

    def cancel_appointment(self, appointment_id, cancelled_by, cancelled_at, reason=None):
        with self._session() as session:
            updated = session.query(Appointment).filter(
                Appointment.id == appointment_id,
                Appointment.status == APPOINTMENT_CONFIRMED,
            ).update(
                {
                    Appointment.status: APPOINTMENT_CANCELLED,
                    Appointment.cancelled_by: cancelled_by,
                    Appointment.cancelled_at: cancelled_at,
                    Appointment.cancel_reason: reason,
                },
                synchronize_session=False,
            )
            session.commit()
            return updated == 1

    def add_config(self, availability_config):
        with self._session() as session:
            session.add(availability_config)
            session.commit()
            return availability_config

    def get_config(self, config_id):
        with self._session() as session:
            return session.get(AvailabilityConfig, config_id)

    def find_active_configs(self, professional_id):
        with self._session() as session:
            return session.query(AvailabilityConfig).filter(
                AvailabilityConfig.professional_id == professional_id,
                AvailabilityConfig.is_active.is_(True),
            ).all()

"""Appointment model definitions."""

from sqlalchemy import Column, Index, String, text
from scheduling.database import Base, UTCDateTime
from scheduling.models.availability import new_id

APPOINTMENT_CONFIRMED = 'confirmed'
APPOINTMENT_CANCELLED = 'cancelled'


class Appointment(Base):
    """Represents a committed booking created from a slot."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            'uq_appointments_confirmed_slot',
            'source_slot_id',
            unique=True,
            sqlite_where=text("status = 'confirmed'"),
            postgresql_where=text("status = 'confirmed'"),
        ),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    client_id = Column(String, nullable=False)
    professional_id = Column(String, nullable=False)
    scheduled_start = Column(UTCDateTime, nullable=False)
    scheduled_end = Column(UTCDateTime, nullable=False)
    timezone = Column(String, nullable=False)
    status = Column(String, nullable=False, default=APPOINTMENT_CONFIRMED)
    source_slot_id = Column(String(32))
    created_at = Column(UTCDateTime)
    cancelled_at = Column(UTCDateTime)
    cancelled_by = Column(String)
    cancel_reason = Column(String)

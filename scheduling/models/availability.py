"""Availability model definitions."""

from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, Integer, String, Time, UniqueConstraint
from scheduling.database import Base, UTCDateTime

SLOT_AVAILABLE = 'available'
SLOT_BOOKED = 'booked'
SLOT_BLOCKED = 'blocked'
SLOT_CANCELLED = 'cancelled'
SLOT_STATUSES = (SLOT_AVAILABLE, SLOT_BOOKED, SLOT_BLOCKED, SLOT_CANCELLED)


def new_id() -> str:
    return uuid4().hex


class AvailabilityConfig(Base):
    """A professional's recurring availability window."""
    __tablename__ = "availability_configs"

    id = Column(String(32), primary_key=True, default=new_id)
    professional_id = Column(String, nullable=False, index=True)
    timezone = Column(String, nullable=False)
    local_start_time = Column(Time, nullable=False)
    local_end_time = Column(Time, nullable=False)
    slot_duration_minutes = Column(Integer, nullable=False)
    recurrence_type = Column(String, nullable=False)
    recurrence_params = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)


class AvailabilitySlot(Base):
    """A single bookable unit generated from an AvailabilityConfig."""
    __tablename__ = "availability_slots"
    __table_args__ = (
        UniqueConstraint('professional_id', 'start_instant', 'end_instant', name='uq_slot_professional_window'),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    professional_id = Column(String, nullable=False)
    config_id = Column(String(32))
    start_instant = Column(UTCDateTime, nullable=False)
    end_instant = Column(UTCDateTime, nullable=False)
    local_start_time = Column(String(5), nullable=False)
    local_end_time = Column(String(5), nullable=False)
    timezone = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SLOT_AVAILABLE)
    booked_by = Column(String)
    booked_at = Column(UTCDateTime)
    appointment_id = Column(String(32))

    @property
    def key(self) -> tuple[str, object, object]:
        return self.professional_id, self.start_instant, self.end_instant


class BlockedPeriod(Base):
    """Professional-declared unavailability, independent of slots."""
    __tablename__ = "blocked_periods"

    id = Column(String(32), primary_key=True, default=new_id)
    professional_id = Column(String, nullable=False)
    start_instant = Column(UTCDateTime, nullable=False)
    end_instant = Column(UTCDateTime, nullable=False)
    timezone = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    reason = Column(String)
    created_by = Column(String)

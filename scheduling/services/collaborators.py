"""Contracts for the collaborators the scheduling core consumes.

Account management, notification delivery and audit storage live outside
this package. The logging implementations here are the defaults wired into
the HTTP app and are enough for local development.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime

logger = logging.getLogger(__name__)


class AccountDirectory(ABC):

    @abstractmethod
    def get_professional_timezone_default(self, professional_id: str) -> str | None:
        """Zone to use when a professional's configuration zone is unusable."""


class StaticAccountDirectory(AccountDirectory):

    def __init__(self, timezones: dict[str, str] | None = None, default: str | None = None):
        self._timezones = dict(timezones or {})
        self._default = default

    def get_professional_timezone_default(self, professional_id: str) -> str | None:
        return self._timezones.get(professional_id, self._default)


@dataclass(frozen=True)
class BookingEvent:
    kind: str
    appointment_id: str
    professional_id: str
    client_id: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class AuditEntry:
    action: str
    actor_id: str
    occurred_at: datetime
    outcome: str
    appointment_id: str | None = None
    slot_id: str | None = None


class NotificationDispatcher(ABC):

    @abstractmethod
    def dispatch(self, event: BookingEvent) -> None:
        ...


class AuditSink(ABC):

    @abstractmethod
    def record(self, entry: AuditEntry) -> None:
        ...


class LoggingNotificationDispatcher(NotificationDispatcher):

    def dispatch(self, event: BookingEvent) -> None:
        logger.info('Notification %s: %s', event.kind, asdict(event))


class LoggingAuditSink(AuditSink):

    def record(self, entry: AuditEntry) -> None:
        logger.info(
            'Audit %s by %s at %s: %s (appointment=%s slot=%s)',
            entry.action,
            entry.actor_id,
            entry.occurred_at.isoformat(),
            entry.outcome,
            entry.appointment_id,
            entry.slot_id,
        )

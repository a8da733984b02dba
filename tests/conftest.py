import os
from datetime import datetime, time, timezone

import pytest

os.environ.setdefault('DATABASE_URL', 'sqlite://')

from scheduling.models.availability import AvailabilityConfig  # noqa: E402
from scheduling.services.stores import InMemoryStore  # noqa: E402


@pytest.fixture
def now() -> datetime:
    # Monday 2026-03-02, 09:00 in Buenos Aires.
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(timeout_seconds=1)


@pytest.fixture
def make_config():
    def factory(**overrides) -> AvailabilityConfig:
        values = {
            'professional_id': 'pro-1',
            'timezone': 'America/Buenos_Aires',
            'local_start_time': time(9, 0),
            'local_end_time': time(17, 0),
            'slot_duration_minutes': 60,
            'recurrence_type': 'daily',
            'recurrence_params': {},
            'is_active': True,
        }
        values.update(overrides)
        return AvailabilityConfig(**values)

    return factory

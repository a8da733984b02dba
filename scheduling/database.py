from datetime import timezone
from threading import Lock

from sqlalchemy import DateTime, create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from scheduling.core import config


class UTCDateTime(TypeDecorator):
    """Stores instants as naive UTC and always hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def build_engine(database_url: str, timeout_seconds: int = config.STORE_TIMEOUT_SECONDS) -> Engine:
    if database_url.startswith("sqlite"):
        connect_args = {"timeout": timeout_seconds, "check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, connect_args=connect_args)

    connect_args = {}
    if database_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={timeout_seconds * 1000}"
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_timeout=timeout_seconds,
        pool_pre_ping=True,
    )


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_schema_checked = False

SCHEMA_INDEXES = (
    'CREATE INDEX IF NOT EXISTS idx_slots_professional_start '
    'ON availability_slots(professional_id, start_instant)',
    'CREATE INDEX IF NOT EXISTS idx_slots_status_start '
    'ON availability_slots(status, start_instant)',
    'CREATE INDEX IF NOT EXISTS idx_blocked_professional_range '
    'ON blocked_periods(professional_id, start_instant, end_instant)',
    'CREATE INDEX IF NOT EXISTS idx_appointments_professional_range '
    'ON appointments(professional_id, scheduled_start, scheduled_end)',
    'CREATE INDEX IF NOT EXISTS idx_appointments_client_range '
    'ON appointments(client_id, scheduled_start, scheduled_end)',
)


def ensure_schema(bind: Engine | None = None) -> None:
    global _schema_checked

    if _schema_checked and bind is None:
        return

    target = bind or engine

    with _schema_lock:
        if _schema_checked and bind is None:
            return

        existing_tables = set(inspect(target).get_table_names())
        required_tables = {'availability_slots', 'blocked_periods', 'appointments'}
        if not required_tables.issubset(existing_tables):
            return

        with target.begin() as connection:
            for statement in SCHEMA_INDEXES:
                connection.execute(text(statement))

        if bind is None:
            _schema_checked = True

"""Database tables and session management for sync state."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import ensure_utc

Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        else:
            return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return str(value)
        else:
            if not isinstance(value, UUID):
                return "%.32x" % UUID(value).int
            else:
                return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        else:
            if not isinstance(value, UUID):
                return UUID(value)
            return value


class UTCDateTime(TypeDecorator):
    """Stores naive UTC and hands back timezone-aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return value.replace(tzinfo=pytz.UTC)


def _now() -> datetime:
    return datetime.now(pytz.UTC)


class EventDB(Base):
    """Local family calendar events, including tombstones."""

    __tablename__ = 'events'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    external_id = Column(String(1024), nullable=True)

    title = Column(String(1024), nullable=False, default='')
    start_at = Column(UTCDateTime(), nullable=False)
    end_at = Column(UTCDateTime(), nullable=True)
    all_day = Column(Boolean, nullable=False, default=False)
    location = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    recurrence = Column(Text, nullable=True)

    source = Column(String(20), nullable=False, default='manual')  # 'manual', 'remote'
    updated_at = Column(UTCDateTime(), nullable=False, default=_now)
    deleted_at = Column(UTCDateTime(), nullable=True)
    synced_at = Column(UTCDateTime(), nullable=True)  # updated_at of the last write made by sync
    remote_updated_at = Column(UTCDateTime(), nullable=True)  # Provider version sync last wrote or read

    __table_args__ = (
        UniqueConstraint('user_id', 'external_id', name='uq_event_user_external'),
        Index('idx_event_user_updated', 'user_id', 'updated_at'),
        Index('idx_event_deleted', 'deleted_at'),
    )


class ConflictDB(Base):
    """Detected conflicts; rows are kept after resolution for audit."""

    __tablename__ = 'sync_conflicts'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False)
    local_event_id = Column(GUID(), nullable=True)
    remote_external_id = Column(String(1024), nullable=False)

    conflict_type = Column(String(20), nullable=False)  # 'modification', 'deletion'
    local_snapshot = Column(Text, nullable=True)  # JSON
    remote_snapshot = Column(Text, nullable=False)  # JSON

    detected_at = Column(UTCDateTime(), nullable=False, default=_now)
    resolution = Column(String(20), nullable=True)  # 'keep_local', 'keep_remote', 'merge'
    resolved_at = Column(UTCDateTime(), nullable=True)
    local_modified_at = Column(UTCDateTime(), nullable=True)
    remote_modified_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index('idx_conflict_user_pending', 'user_id', 'resolution'),
        Index('idx_conflict_remote', 'user_id', 'remote_external_id'),
        Index('idx_conflict_detected', 'detected_at'),
    )


class SyncRunLogDB(Base):
    """Append-only log of orchestrated runs."""

    __tablename__ = 'sync_run_logs'

    id = Column(GUID(), primary_key=True, default=uuid4)
    user_id = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False, default='full_sync')  # 'full_sync', 'single_event'
    direction = Column(String(20), nullable=False, default='bidirectional')

    started_at = Column(UTCDateTime(), nullable=False)
    finished_at = Column(UTCDateTime(), nullable=False)
    checkpoint_at = Column(UTCDateTime(), nullable=False)  # snapshot time taken before listing
    duration_ms = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False)

    events_processed = Column(Integer, nullable=False, default=0)
    events_created = Column(Integer, nullable=False, default=0)
    events_updated = Column(Integer, nullable=False, default=0)
    events_deleted = Column(Integer, nullable=False, default=0)
    conflicts_detected = Column(Integer, nullable=False, default=0)
    errors = Column(Text, nullable=False, default='[]')  # JSON list

    remote_sync_token = Column(String(1000), nullable=True)  # Google nextSyncToken

    __table_args__ = (
        Index('idx_run_log_user_finished', 'user_id', 'finished_at'),
        Index('idx_run_log_user_success', 'user_id', 'kind', 'success'),
        Index('idx_run_log_started', 'started_at'),
    )


class SyncPreferencesDB(Base):
    """Per-user sync preferences."""

    __tablename__ = 'sync_preferences'

    user_id = Column(String(255), primary_key=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_frequency_minutes = Column(Integer, nullable=False, default=15)
    sync_direction = Column(String(20), nullable=False, default='bidirectional')
    auto_resolve_conflicts = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime(), nullable=False, default=_now)

    __table_args__ = (
        Index('idx_preferences_enabled', 'sync_enabled'),
    )


class DatabaseManager:
    """Database manager owning engine and session factory."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        connect_args = {}
        if settings.database_url.startswith('sqlite'):
            # Sessions are used from the server's worker threads
            connect_args['check_same_thread'] = False
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            connect_args=connect_args
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def reset(self) -> None:
        """Drop and recreate all tables."""
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

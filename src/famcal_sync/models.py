"""Data models for calendar synchronization."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, root_validator, validator
import pytz


EPOCH = datetime(1970, 1, 1, tzinfo=pytz.UTC)
ALL_DAY_DURATION = timedelta(days=1)
DEFAULT_TIMED_DURATION = timedelta(hours=1)

# Google Calendar field limits
MAX_TITLE_LENGTH = 1024
MAX_LOCATION_LENGTH = 1024
MAX_DESCRIPTION_LENGTH = 8192


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to pytz UTC, treating naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def normalize_text(text: Optional[str], max_length: Optional[int] = None) -> str:
    """Text as the provider stores it: no null bytes, trimmed, length-capped."""
    if not text:
        return ''
    normalized = str(text).replace('\x00', '').strip()
    if max_length and len(normalized) > max_length:
        normalized = normalized[:max_length - 3] + '...'
    return normalized


class EventSource(str, Enum):
    """Provenance of a local event."""

    MANUAL = "manual"  # Created in the app by a family member
    REMOTE = "remote"  # Imported from the provider


class SyncDirection(str, Enum):
    """Which way changes are allowed to flow."""

    BIDIRECTIONAL = "bidirectional"
    REMOTE_TO_LOCAL = "remote_to_local"
    LOCAL_TO_REMOTE = "local_to_remote"

    @property
    def pushes_local(self) -> bool:
        """Whether local changes are written to the provider."""
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.LOCAL_TO_REMOTE)

    @property
    def pulls_remote(self) -> bool:
        """Whether provider changes are written to the local store."""
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.REMOTE_TO_LOCAL)


class ConflictResolution(str, Enum):
    """User choices for settling a conflict."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"  # Caller supplies the merged fields


class ConflictType(str, Enum):
    """Kind of disagreement between the two sides."""

    MODIFICATION = "modification"
    DELETION = "deletion"


class RunKind(str, Enum):
    """Kind of orchestrated run recorded in the sync log."""

    FULL_SYNC = "full_sync"
    SINGLE_EVENT = "single_event"


class SchedulerState(str, Enum):
    """Per-user scheduler state."""

    IDLE = "idle"
    CHECKING = "checking"
    SYNCING = "syncing"


class EventFields(BaseModel):
    """Event content shared by local and remote representations."""

    title: str = Field("", description="Event title")
    start_at: Optional[datetime] = Field(None, description="Event start time")
    end_at: Optional[datetime] = Field(None, description="Event end time (nullable for all-day)")
    all_day: bool = Field(False, description="Whether event is all-day")
    location: Optional[str] = Field(None, description="Event location")
    description: Optional[str] = Field(None, description="Event description")
    recurrence: Optional[str] = Field(None, description="RRULE for recurring events")

    @validator('title', pre=True)
    def none_title_is_empty(cls, v):
        return "" if v is None else v

    @validator('start_at', 'end_at')
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware UTC."""
        return ensure_utc(v)

    @validator('end_at')
    def end_not_before_start(cls, v, values):
        """Ensure end time does not precede start time."""
        start = values.get('start_at')
        if v is not None and start is not None and v < start:
            raise ValueError(f'End time ({v}) must not be before start time ({start})')
        return v

    def effective_end(self) -> Optional[datetime]:
        """End time with the default duration applied when none is set."""
        if self.end_at is None and self.start_at is not None:
            return self.start_at + (ALL_DAY_DURATION if self.all_day else DEFAULT_TIMED_DURATION)
        return self.end_at

    def content_key(self) -> Dict[str, Any]:
        """Normalized content used for field-identical comparison."""
        start = self.start_at
        end = self.effective_end()
        return {
            'title': normalize_text(self.title, MAX_TITLE_LENGTH),
            'start_at': start.isoformat() if start else None,
            'end_at': end.isoformat() if end else None,
            'all_day': self.all_day,
            'location': normalize_text(self.location, MAX_LOCATION_LENGTH),
            'description': normalize_text(self.description, MAX_DESCRIPTION_LENGTH),
            'recurrence': self.recurrence or '',
        }

    def same_content(self, other: 'EventFields') -> bool:
        """Whether two events carry identical content."""
        return self.content_key() == other.content_key()

    def to_fields(self) -> 'EventFields':
        """Project onto the shared content fields."""
        return EventFields(
            title=self.title,
            start_at=self.start_at,
            end_at=self.end_at,
            all_day=self.all_day,
            location=self.location,
            description=self.description,
            recurrence=self.recurrence,
        )


CONTENT_FIELDS = tuple(EventFields.model_fields.keys())


class CalendarEvent(EventFields):
    """Local canonical event record."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str = Field(..., description="Owning user")
    external_id: Optional[str] = Field(None, description="Provider event ID once linked")
    start_at: datetime = Field(..., description="Event start time")
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = Field(None, description="Tombstone marker")
    source: EventSource = Field(EventSource.MANUAL)
    synced_at: Optional[datetime] = Field(None, description="updated_at of the last write made by sync")
    remote_updated_at: Optional[datetime] = Field(
        None, description="Provider updated_at of the version sync last wrote or read"
    )

    @validator('updated_at', 'deleted_at', 'synced_at', 'remote_updated_at')
    def ensure_bookkeeping_utc(cls, v):
        return ensure_utc(v)

    @property
    def is_deleted(self) -> bool:
        """Whether this event is tombstoned."""
        return self.deleted_at is not None

    @property
    def written_by_sync(self) -> bool:
        """Whether the latest mutation was sync applying the other side."""
        return self.synced_at is not None and self.synced_at >= self.updated_at

    def is_echo(self, remote: 'RemoteEvent') -> bool:
        """Whether a provider version is one sync already wrote or read."""
        return self.remote_updated_at is not None and remote.updated_at <= self.remote_updated_at

    def apply_fields(self, fields: EventFields) -> 'CalendarEvent':
        """Return a copy carrying the given content, undeleted."""
        data = self.model_dump()
        data.update({name: getattr(fields, name) for name in CONTENT_FIELDS})
        data['deleted_at'] = None
        if isinstance(fields, RemoteEvent):
            data['remote_updated_at'] = fields.updated_at
        return type(self)(**data)

    @classmethod
    def from_remote(cls, user_id: str, remote: 'RemoteEvent') -> 'CalendarEvent':
        """Build a new local event from a provider event."""
        return cls(
            user_id=user_id,
            external_id=remote.external_id,
            source=EventSource.REMOTE,
            remote_updated_at=remote.updated_at,
            **{name: getattr(remote, name) for name in CONTENT_FIELDS},
        )


class RemoteEvent(EventFields):
    """Provider projection of an event, fetched transiently per run."""

    external_id: str = Field(..., description="Provider event ID")
    updated_at: datetime = Field(..., description="Provider last-modified time")
    deleted: bool = Field(False, description="Provider deletion marker")

    @validator('updated_at')
    def ensure_updated_utc(cls, v):
        return ensure_utc(v)

    @root_validator(skip_on_failure=True)
    def start_required_unless_deleted(cls, values):
        """Provider tombstones carry no times; live events must."""
        if not values.get('deleted') and values.get('start_at') is None:
            raise ValueError('start_at is required for events that are not deleted')
        return values


class SyncConflict(BaseModel):
    """A pair of incompatible changes awaiting user resolution."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    local_event_id: Optional[UUID] = None
    remote_external_id: str
    conflict_type: ConflictType = ConflictType.MODIFICATION
    local_snapshot: Optional[CalendarEvent] = None
    remote_snapshot: RemoteEvent
    detected_at: datetime = Field(default_factory=utcnow)
    resolution: Optional[ConflictResolution] = None
    resolved_at: Optional[datetime] = None
    local_modified_at: Optional[datetime] = None
    remote_modified_at: Optional[datetime] = None

    @validator('detected_at', 'resolved_at')
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)

    @validator('local_modified_at', always=True)
    def default_local_modified_at(cls, v, values):
        """Default to the local snapshot's last mutation time."""
        snapshot = values.get('local_snapshot')
        if v is None and snapshot is not None:
            v = snapshot.updated_at
        return ensure_utc(v)

    @validator('remote_modified_at', always=True)
    def default_remote_modified_at(cls, v, values):
        snapshot = values.get('remote_snapshot')
        if v is None and snapshot is not None:
            v = snapshot.updated_at
        return ensure_utc(v)

    @property
    def is_pending(self) -> bool:
        """Whether the conflict still awaits a resolution."""
        return self.resolution is None

    def changed_fields(self) -> List[str]:
        """Content fields whose values differ between the snapshots."""
        if self.local_snapshot is None:
            return list(self.remote_snapshot.content_key().keys())
        local_key = self.local_snapshot.content_key()
        remote_key = self.remote_snapshot.content_key()
        return [name for name in local_key if local_key[name] != remote_key[name]]


class SyncRunLog(BaseModel):
    """One row per orchestrated run; the checkpoint source."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    kind: RunKind = RunKind.FULL_SYNC
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    started_at: datetime
    finished_at: datetime
    success: bool
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    errors: List[str] = Field(default_factory=list)
    remote_sync_token: Optional[str] = None
    # Lower bound for the next run's change listing
    checkpoint_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @validator('started_at', 'finished_at')
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v)

    @validator('checkpoint_at', always=True)
    def default_checkpoint_at(cls, v, values):
        """Runs that record no snapshot time are checkpointed at their start."""
        if v is None:
            return values.get('started_at')
        return ensure_utc(v)

    @validator('duration_ms', always=True)
    def default_duration_ms(cls, v, values):
        started = values.get('started_at')
        finished = values.get('finished_at')
        if v is None and started is not None and finished is not None:
            v = int((finished - started).total_seconds() * 1000)
        return v


class SyncPreferences(BaseModel):
    """Per-user synchronization settings."""

    user_id: str
    sync_enabled: bool = True
    sync_frequency_minutes: int = Field(15, ge=5, le=240)
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    auto_resolve_conflicts: bool = False
    updated_at: datetime = Field(default_factory=utcnow)


class SyncPreferencesUpdate(BaseModel):
    """Partial update of SyncPreferences; unset fields are left alone."""

    model_config = ConfigDict(extra='forbid')

    sync_enabled: Optional[bool] = None
    sync_frequency_minutes: Optional[int] = Field(None, ge=5, le=240)
    sync_direction: Optional[SyncDirection] = None
    auto_resolve_conflicts: Optional[bool] = None


class SyncResult(BaseModel):
    """Outcome of a full or single-event sync."""

    success: bool = False
    log_id: Optional[UUID] = None
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    errors: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def total_operations(self) -> int:
        """Number of writes applied by the run."""
        return self.events_created + self.events_updated + self.events_deleted


class SyncStatus(BaseModel):
    """Canonical, observable sync state for one user."""

    user_id: str
    state: SchedulerState = SchedulerState.IDLE
    sync_enabled: bool = False
    last_sync_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    last_result: Optional[SyncResult] = None
    pending_conflicts: int = 0


@dataclass
class ChangeSet:
    """Provider changes since a checkpoint."""

    events: List[RemoteEvent] = field(default_factory=list)
    next_sync_token: Optional[str] = None
    invalid: List[str] = field(default_factory=list)

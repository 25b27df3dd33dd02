"""SQLAlchemy implementations of the storage interfaces."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from ..database import ConflictDB, DatabaseManager, EventDB, SyncPreferencesDB, SyncRunLogDB
from ..errors import AlreadyResolvedError, ConflictNotFoundError, InvalidEventError
from ..models import (
    CalendarEvent, ConflictResolution, ConflictType, EventSource, RemoteEvent, RunKind,
    SyncConflict, SyncDirection, SyncPreferences, SyncPreferencesUpdate, SyncRunLog, utcnow
)
from .base import ConflictStore, EventStore, SyncPreferenceStore, SyncRunLogStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _event_from_row(row: EventDB) -> CalendarEvent:
    return CalendarEvent(
        id=row.id,
        user_id=row.user_id,
        external_id=row.external_id,
        title=row.title,
        start_at=row.start_at,
        end_at=row.end_at,
        all_day=row.all_day,
        location=row.location,
        description=row.description,
        recurrence=row.recurrence,
        source=EventSource(row.source),
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
        synced_at=row.synced_at,
        remote_updated_at=row.remote_updated_at,
    )


def _conflict_from_row(row: ConflictDB) -> SyncConflict:
    return SyncConflict(
        id=row.id,
        user_id=row.user_id,
        local_event_id=row.local_event_id,
        remote_external_id=row.remote_external_id,
        conflict_type=ConflictType(row.conflict_type),
        local_snapshot=(
            CalendarEvent.model_validate_json(row.local_snapshot) if row.local_snapshot else None
        ),
        remote_snapshot=RemoteEvent.model_validate_json(row.remote_snapshot),
        detected_at=row.detected_at,
        resolution=ConflictResolution(row.resolution) if row.resolution else None,
        resolved_at=row.resolved_at,
        local_modified_at=row.local_modified_at,
        remote_modified_at=row.remote_modified_at,
    )


def _run_log_from_row(row: SyncRunLogDB) -> SyncRunLog:
    return SyncRunLog(
        id=row.id,
        user_id=row.user_id,
        kind=RunKind(row.kind),
        direction=SyncDirection(row.direction),
        started_at=row.started_at,
        finished_at=row.finished_at,
        success=row.success,
        events_processed=row.events_processed,
        events_created=row.events_created,
        events_updated=row.events_updated,
        events_deleted=row.events_deleted,
        conflicts_detected=row.conflicts_detected,
        errors=json.loads(row.errors or '[]'),
        remote_sync_token=row.remote_sync_token,
        checkpoint_at=row.checkpoint_at,
        duration_ms=row.duration_ms,
    )


def _preferences_from_row(row: SyncPreferencesDB) -> SyncPreferences:
    return SyncPreferences(
        user_id=row.user_id,
        sync_enabled=row.sync_enabled,
        sync_frequency_minutes=row.sync_frequency_minutes,
        sync_direction=SyncDirection(row.sync_direction),
        auto_resolve_conflicts=row.auto_resolve_conflicts,
        updated_at=row.updated_at,
    )


class SqlEventStore(EventStore):
    """Event store backed by the events table."""

    def __init__(self, db_manager: DatabaseManager, clock: Optional[Clock] = None):
        """Initialize event store.

        Args:
            db_manager: Database manager
            clock: Source of mutation timestamps
        """
        self.db_manager = db_manager
        self._clock = clock or utcnow
        self.logger = logger.getChild('events')

    def _stamp(self, previous: Optional[datetime]) -> datetime:
        now = self._clock()
        # updated_at must strictly increase per mutation
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def list_changed_since(self, user_id: str, since: datetime) -> List[CalendarEvent]:
        with self.db_manager.get_session() as session:
            rows = session.query(EventDB).filter(
                EventDB.user_id == user_id,
                EventDB.updated_at > since
            ).order_by(EventDB.updated_at).all()
            return [_event_from_row(row) for row in rows]

    def upsert(self, event: CalendarEvent, synced: bool = False) -> CalendarEvent:
        with self.db_manager.get_session() as session:
            row = session.get(EventDB, event.id)
            if row is None:
                row = EventDB(id=event.id, user_id=event.user_id)
                session.add(row)
                previous = None
            else:
                previous = row.updated_at

            row.external_id = event.external_id
            row.title = event.title
            row.start_at = event.start_at
            row.end_at = event.end_at
            row.all_day = event.all_day
            row.location = event.location
            row.description = event.description
            row.recurrence = event.recurrence
            row.source = event.source.value
            row.deleted_at = event.deleted_at
            row.remote_updated_at = event.remote_updated_at
            row.updated_at = self._stamp(previous)
            if synced:
                row.synced_at = row.updated_at

            session.commit()
            return _event_from_row(row)

    def tombstone(self, event_id: UUID, synced: bool = False) -> None:
        with self.db_manager.get_session() as session:
            row = session.get(EventDB, event_id)
            if row is None:
                raise InvalidEventError(f"Event {event_id} not found")
            now = self._stamp(row.updated_at)
            row.deleted_at = now
            row.updated_at = now
            if synced:
                row.synced_at = now
            session.commit()

    def get_by_id(self, event_id: UUID) -> Optional[CalendarEvent]:
        with self.db_manager.get_session() as session:
            row = session.get(EventDB, event_id)
            return _event_from_row(row) if row else None

    def get_by_external_id(self, user_id: str, external_id: str) -> Optional[CalendarEvent]:
        with self.db_manager.get_session() as session:
            row = session.query(EventDB).filter(
                EventDB.user_id == user_id,
                EventDB.external_id == external_id
            ).first()
            return _event_from_row(row) if row else None

    def list_events(self, user_id: str, include_deleted: bool = False) -> List[CalendarEvent]:
        with self.db_manager.get_session() as session:
            query = session.query(EventDB).filter(EventDB.user_id == user_id)
            if not include_deleted:
                query = query.filter(EventDB.deleted_at.is_(None))
            return [_event_from_row(row) for row in query.order_by(EventDB.start_at).all()]

    def purge_tombstones(self, older_than: datetime) -> int:
        with self.db_manager.get_session() as session:
            removed = session.query(EventDB).filter(
                EventDB.deleted_at.isnot(None),
                EventDB.deleted_at < older_than
            ).delete(synchronize_session=False)
            session.commit()
        if removed:
            self.logger.info(f"Purged {removed} tombstoned events older than {older_than.isoformat()}")
        return removed


class SqlSyncPreferenceStore(SyncPreferenceStore):
    """Preference store backed by the sync_preferences table."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        default_frequency_minutes: int = 15,
        clock: Optional[Clock] = None
    ):
        self.db_manager = db_manager
        self.default_frequency_minutes = default_frequency_minutes
        self._clock = clock or utcnow

    def get(self, user_id: str) -> Optional[SyncPreferences]:
        with self.db_manager.get_session() as session:
            row = session.get(SyncPreferencesDB, user_id)
            return _preferences_from_row(row) if row else None

    def upsert(
        self,
        user_id: str,
        partial: Union[SyncPreferencesUpdate, Dict[str, Any]]
    ) -> SyncPreferences:
        if not isinstance(partial, SyncPreferencesUpdate):
            partial = SyncPreferencesUpdate(**partial)
        changes = partial.model_dump(exclude_none=True)

        with self.db_manager.get_session() as session:
            row = session.get(SyncPreferencesDB, user_id)
            if row is None:
                current = SyncPreferences(
                    user_id=user_id,
                    sync_frequency_minutes=self.default_frequency_minutes
                )
                row = SyncPreferencesDB(user_id=user_id)
                session.add(row)
            else:
                current = _preferences_from_row(row)

            merged = SyncPreferences(**{
                **current.model_dump(),
                **changes,
                'updated_at': self._clock(),
            })

            row.sync_enabled = merged.sync_enabled
            row.sync_frequency_minutes = merged.sync_frequency_minutes
            row.sync_direction = merged.sync_direction.value
            row.auto_resolve_conflicts = merged.auto_resolve_conflicts
            row.updated_at = merged.updated_at
            session.commit()
            return merged

    def list_enabled(self) -> List[SyncPreferences]:
        with self.db_manager.get_session() as session:
            rows = session.query(SyncPreferencesDB).filter(
                SyncPreferencesDB.sync_enabled == True  # noqa: E712
            ).order_by(SyncPreferencesDB.user_id).all()
            return [_preferences_from_row(row) for row in rows]


class SqlConflictStore(ConflictStore):
    """Conflict store backed by the sync_conflicts table."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def create(self, conflict: SyncConflict) -> SyncConflict:
        with self.db_manager.get_session() as session:
            row = ConflictDB(
                id=conflict.id,
                user_id=conflict.user_id,
                local_event_id=conflict.local_event_id,
                remote_external_id=conflict.remote_external_id,
                conflict_type=conflict.conflict_type.value,
                local_snapshot=(
                    conflict.local_snapshot.model_dump_json() if conflict.local_snapshot else None
                ),
                remote_snapshot=conflict.remote_snapshot.model_dump_json(),
                detected_at=conflict.detected_at,
                resolution=conflict.resolution.value if conflict.resolution else None,
                resolved_at=conflict.resolved_at,
                local_modified_at=conflict.local_modified_at,
                remote_modified_at=conflict.remote_modified_at,
            )
            session.add(row)
            session.commit()
            return _conflict_from_row(row)

    def get(self, conflict_id: UUID) -> Optional[SyncConflict]:
        with self.db_manager.get_session() as session:
            row = session.get(ConflictDB, conflict_id)
            return _conflict_from_row(row) if row else None

    def list_pending(self, user_id: str) -> List[SyncConflict]:
        with self.db_manager.get_session() as session:
            rows = session.query(ConflictDB).filter(
                ConflictDB.user_id == user_id,
                ConflictDB.resolution.is_(None)
            ).order_by(ConflictDB.detected_at).all()
            return [_conflict_from_row(row) for row in rows]

    def find_pending(self, user_id: str, remote_external_id: str) -> Optional[SyncConflict]:
        with self.db_manager.get_session() as session:
            row = session.query(ConflictDB).filter(
                ConflictDB.user_id == user_id,
                ConflictDB.remote_external_id == remote_external_id,
                ConflictDB.resolution.is_(None)
            ).first()
            return _conflict_from_row(row) if row else None

    def update_snapshots(
        self,
        conflict_id: UUID,
        local_snapshot: Optional[CalendarEvent],
        remote_snapshot: RemoteEvent,
        conflict_type: ConflictType
    ) -> SyncConflict:
        with self.db_manager.get_session() as session:
            row = session.get(ConflictDB, conflict_id)
            if row is None:
                raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
            if row.resolution is not None:
                raise AlreadyResolvedError(
                    f"Conflict {conflict_id} already resolved as {row.resolution}"
                )

            row.conflict_type = conflict_type.value
            row.local_snapshot = local_snapshot.model_dump_json() if local_snapshot else None
            row.remote_snapshot = remote_snapshot.model_dump_json()
            row.local_modified_at = local_snapshot.updated_at if local_snapshot else None
            row.remote_modified_at = remote_snapshot.updated_at
            session.commit()
            return _conflict_from_row(row)

    def resolve(
        self,
        conflict_id: UUID,
        resolution: ConflictResolution,
        resolved_at: datetime
    ) -> SyncConflict:
        with self.db_manager.get_session() as session:
            # Conditional update so a concurrent second resolve cannot overwrite
            updated = session.query(ConflictDB).filter(
                ConflictDB.id == conflict_id,
                ConflictDB.resolution.is_(None)
            ).update(
                {'resolution': resolution.value, 'resolved_at': resolved_at},
                synchronize_session=False
            )
            session.commit()

            row = session.get(ConflictDB, conflict_id)
            if row is None:
                raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
            if not updated:
                raise AlreadyResolvedError(
                    f"Conflict {conflict_id} already resolved as {row.resolution}"
                )
            session.refresh(row)
            return _conflict_from_row(row)


class SqlSyncRunLogStore(SyncRunLogStore):
    """Run log backed by the sync_run_logs table."""

    def __init__(self, db_manager: DatabaseManager, clock: Optional[Clock] = None):
        self.db_manager = db_manager
        self._clock = clock or utcnow

    def append(self, log: SyncRunLog) -> SyncRunLog:
        with self.db_manager.get_session() as session:
            row = SyncRunLogDB(
                id=log.id,
                user_id=log.user_id,
                kind=log.kind.value,
                direction=log.direction.value,
                started_at=log.started_at,
                finished_at=log.finished_at,
                success=log.success,
                events_processed=log.events_processed,
                events_created=log.events_created,
                events_updated=log.events_updated,
                events_deleted=log.events_deleted,
                conflicts_detected=log.conflicts_detected,
                errors=json.dumps(log.errors),
                remote_sync_token=log.remote_sync_token,
                checkpoint_at=log.checkpoint_at,
                duration_ms=log.duration_ms,
            )
            session.add(row)
            session.commit()
            return _run_log_from_row(row)

    def last_successful(
        self,
        user_id: str,
        kind: RunKind = RunKind.FULL_SYNC
    ) -> Optional[SyncRunLog]:
        with self.db_manager.get_session() as session:
            row = session.query(SyncRunLogDB).filter(
                SyncRunLogDB.user_id == user_id,
                SyncRunLogDB.kind == kind.value,
                SyncRunLogDB.success == True  # noqa: E712
            ).order_by(SyncRunLogDB.finished_at.desc()).first()
            return _run_log_from_row(row) if row else None

    def latest(self, user_id: str) -> Optional[SyncRunLog]:
        with self.db_manager.get_session() as session:
            row = session.query(SyncRunLogDB).filter(
                SyncRunLogDB.user_id == user_id
            ).order_by(SyncRunLogDB.started_at.desc()).first()
            return _run_log_from_row(row) if row else None

    def recent(self, user_id: Optional[str] = None, limit: int = 10) -> List[SyncRunLog]:
        with self.db_manager.get_session() as session:
            query = session.query(SyncRunLogDB)
            if user_id:
                query = query.filter(SyncRunLogDB.user_id == user_id)
            rows = query.order_by(SyncRunLogDB.started_at.desc()).limit(limit).all()
            return [_run_log_from_row(row) for row in rows]

    def statistics(self, days: int = 30) -> Dict[str, Any]:
        cutoff_date = self._clock() - timedelta(days=days)

        with self.db_manager.get_session() as session:
            runs = session.query(SyncRunLogDB).filter(
                SyncRunLogDB.started_at >= cutoff_date
            ).all()

            durations = [r.duration_ms for r in runs if r.duration_ms is not None]

            return {
                'period_days': days,
                'total_runs': len(runs),
                'successful_runs': len([r for r in runs if r.success]),
                'failed_runs': len([r for r in runs if not r.success]),
                'events_created': sum(r.events_created for r in runs),
                'events_updated': sum(r.events_updated for r in runs),
                'events_deleted': sum(r.events_deleted for r in runs),
                'conflicts_detected': sum(r.conflicts_detected for r in runs),
                'average_duration_ms': sum(durations) // len(durations) if durations else None,
            }

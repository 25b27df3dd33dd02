"""Storage interfaces consumed by the sync orchestrator."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from ..models import (
    CalendarEvent, ConflictResolution, ConflictType, RemoteEvent, RunKind, SyncConflict,
    SyncPreferences, SyncPreferencesUpdate, SyncRunLog
)


class EventStore(ABC):
    """Persisted local events keyed by internal id plus optional external id."""

    @abstractmethod
    def list_changed_since(self, user_id: str, since: datetime) -> List[CalendarEvent]:
        """Get events mutated after a timestamp, tombstones included.

        Args:
            user_id: Owning user
            since: Exclusive lower bound on updated_at

        Returns:
            Events ordered by updated_at
        """
        pass

    @abstractmethod
    def upsert(self, event: CalendarEvent, synced: bool = False) -> CalendarEvent:
        """Insert or update an event, stamping updated_at.

        Args:
            event: Event to persist
            synced: Whether sync is writing the other side's state; such writes
                are not reported back as local changes

        Returns:
            Stored event with its new updated_at

        Raises:
            SQLAlchemyError: If the write violates a constraint
        """
        pass

    @abstractmethod
    def tombstone(self, event_id: UUID, synced: bool = False) -> None:
        """Mark an event deleted without removing the row.

        Args:
            event_id: Internal event ID
            synced: Whether sync is applying a provider deletion

        Raises:
            InvalidEventError: If the event does not exist
        """
        pass

    @abstractmethod
    def get_by_id(self, event_id: UUID) -> Optional[CalendarEvent]:
        """Get an event by internal ID."""
        pass

    @abstractmethod
    def get_by_external_id(self, user_id: str, external_id: str) -> Optional[CalendarEvent]:
        """Get the event linked to a provider ID, tombstoned or not."""
        pass

    @abstractmethod
    def list_events(self, user_id: str, include_deleted: bool = False) -> List[CalendarEvent]:
        """Get all of a user's events ordered by start time."""
        pass

    @abstractmethod
    def purge_tombstones(self, older_than: datetime) -> int:
        """Physically remove tombstones older than a cutoff.

        Args:
            older_than: Tombstones with deleted_at before this are removed

        Returns:
            Number of rows removed
        """
        pass


class SyncPreferenceStore(ABC):
    """Per-user sync settings."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[SyncPreferences]:
        """Get a user's preferences, or None if never configured."""
        pass

    @abstractmethod
    def upsert(
        self,
        user_id: str,
        partial: Union[SyncPreferencesUpdate, Dict[str, Any]]
    ) -> SyncPreferences:
        """Create or partially update a user's preferences.

        Args:
            user_id: Owning user
            partial: Fields to change; missing rows start from defaults

        Returns:
            Stored preferences

        Raises:
            pydantic.ValidationError: If a value is out of bounds
        """
        pass

    @abstractmethod
    def list_enabled(self) -> List[SyncPreferences]:
        """Get preferences of every user with sync enabled."""
        pass


class ConflictStore(ABC):
    """Durable conflicts awaiting user resolution."""

    @abstractmethod
    def create(self, conflict: SyncConflict) -> SyncConflict:
        """Persist a newly detected conflict."""
        pass

    @abstractmethod
    def get(self, conflict_id: UUID) -> Optional[SyncConflict]:
        """Get a conflict by ID, pending or resolved."""
        pass

    @abstractmethod
    def list_pending(self, user_id: str) -> List[SyncConflict]:
        """Get a user's unresolved conflicts, oldest first."""
        pass

    @abstractmethod
    def find_pending(self, user_id: str, remote_external_id: str) -> Optional[SyncConflict]:
        """Get the unresolved conflict for a provider event, if any."""
        pass

    @abstractmethod
    def update_snapshots(
        self,
        conflict_id: UUID,
        local_snapshot: Optional[CalendarEvent],
        remote_snapshot: RemoteEvent,
        conflict_type: ConflictType
    ) -> SyncConflict:
        """Replace a pending conflict's snapshots with newer versions of either side.

        Raises:
            ConflictNotFoundError: If the conflict does not exist
            AlreadyResolvedError: If the conflict already has a resolution
        """
        pass

    @abstractmethod
    def resolve(
        self,
        conflict_id: UUID,
        resolution: ConflictResolution,
        resolved_at: datetime
    ) -> SyncConflict:
        """Record a resolution exactly once.

        Args:
            conflict_id: Conflict ID
            resolution: Chosen resolution
            resolved_at: Resolution time

        Returns:
            Resolved conflict

        Raises:
            ConflictNotFoundError: If the conflict does not exist
            AlreadyResolvedError: If the conflict already has a resolution
        """
        pass


class SyncRunLogStore(ABC):
    """Append-only sync run log."""

    @abstractmethod
    def append(self, log: SyncRunLog) -> SyncRunLog:
        """Append a finished run."""
        pass

    @abstractmethod
    def last_successful(
        self,
        user_id: str,
        kind: RunKind = RunKind.FULL_SYNC
    ) -> Optional[SyncRunLog]:
        """Get the most recently finished successful run of a kind."""
        pass

    @abstractmethod
    def latest(self, user_id: str) -> Optional[SyncRunLog]:
        """Get the most recently started run of any kind or outcome."""
        pass

    @abstractmethod
    def recent(self, user_id: Optional[str] = None, limit: int = 10) -> List[SyncRunLog]:
        """Get recent runs, newest first."""
        pass

    @abstractmethod
    def statistics(self, days: int = 30) -> Dict[str, Any]:
        """Summarize runs over the past N days."""
        pass

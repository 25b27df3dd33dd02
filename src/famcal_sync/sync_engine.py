"""Sync orchestrator: reconciliation, conflict recording and resolution."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .database import DatabaseManager
from .errors import (
    AlreadyResolvedError, ConflictNotFoundError, InvalidEventError, NotConfiguredError,
    SyncDisabledError
)
from .models import (
    EPOCH, CalendarEvent, ConflictResolution, ConflictType, EventFields, EventSource, RunKind,
    RemoteEvent, SyncConflict, SyncDirection, SyncPreferences, SyncPreferencesUpdate, SyncResult,
    SyncRunLog, utcnow
)
from .reconciler import PlanAction, PlannedChange, build_sync_plan
from .services import (
    CalendarServiceError, EventNotFoundError, GoogleCalendarClient, RemoteCalendarClient,
    RemoteTimeoutError
)
from .stores import (
    ConflictStore, EventStore, SyncPreferenceStore, SyncRunLogStore, SqlConflictStore,
    SqlEventStore, SqlSyncPreferenceStore, SqlSyncRunLogStore
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Failures confined to a single item; the run carries on with the next one
ITEM_ERRORS = (CalendarServiceError, SQLAlchemyError, ValidationError, InvalidEventError)


class ConflictResolver:
    """Suggests a default resolution from event provenance."""

    def __init__(self):
        self.logger = logger.getChild('conflict_resolver')

    def suggest(self, conflict: SyncConflict) -> ConflictResolution:
        """Suggest a resolution for a conflict.

        Events imported from the provider defer to the provider; events the
        family created in the app keep the local version.

        Args:
            conflict: Pending conflict

        Returns:
            Suggested resolution (never merge)
        """
        local = conflict.local_snapshot
        if local is None or local.source == EventSource.REMOTE:
            return ConflictResolution.KEEP_REMOTE
        return ConflictResolution.KEEP_LOCAL


class SyncOrchestrator:
    """Bidirectional reconciliation between the local event store and a remote calendar."""

    def __init__(
        self,
        settings: Settings,
        events: EventStore,
        remote: RemoteCalendarClient,
        preferences: SyncPreferenceStore,
        conflicts: ConflictStore,
        run_logs: SyncRunLogStore,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize sync orchestrator.

        Args:
            settings: Application settings
            events: Local event store
            remote: Remote calendar client
            preferences: Per-user preference store
            conflicts: Conflict store
            run_logs: Sync run log store
            clock: Source of run timestamps
        """
        self.settings = settings
        self.events = events
        self.remote = remote
        self.preferences = preferences
        self.conflicts = conflicts
        self.run_logs = run_logs
        self.conflict_resolver = ConflictResolver()
        self._clock = clock or utcnow
        self.logger = logger.getChild('orchestrator')

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        remote: Optional[RemoteCalendarClient] = None,
        clock: Optional[Callable[[], datetime]] = None
    ) -> 'SyncOrchestrator':
        """Wire an orchestrator to SQL stores and the Google client."""
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        return cls(
            settings,
            events=SqlEventStore(db_manager, clock=clock),
            remote=remote or GoogleCalendarClient(settings),
            preferences=SqlSyncPreferenceStore(
                db_manager, settings.default_sync_frequency_minutes, clock=clock
            ),
            conflicts=SqlConflictStore(db_manager),
            run_logs=SqlSyncRunLogStore(db_manager, clock=clock),
            clock=clock,
        )

    async def close(self) -> None:
        """Clean up resources."""
        await self.remote.close()

    async def _remote(self, coro: Awaitable[T]) -> T:
        """Await a remote call under the configured timeout."""
        timeout = self.settings.request_timeout_seconds
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise RemoteTimeoutError(f"Remote calendar call timed out after {timeout:g}s")

    def _require_preferences(self, user_id: str) -> SyncPreferences:
        prefs = self.preferences.get(user_id)
        if prefs is None:
            raise NotConfiguredError(f"No sync preferences for user {user_id}")
        if not prefs.sync_enabled:
            raise SyncDisabledError("Sync is disabled for this user")
        return prefs

    async def perform_full_sync(
        self,
        user_id: str,
        direction: Optional[Union[SyncDirection, str]] = None
    ) -> SyncResult:
        """Reconcile everything that changed on either side since the checkpoint.

        Args:
            user_id: User to sync
            direction: Override of the user's configured direction

        Returns:
            Sync result; unconfigured or disabled users get success=False and no log row
        """
        result = SyncResult(started_at=self._clock())

        try:
            prefs = self._require_preferences(user_id)
        except (NotConfiguredError, SyncDisabledError) as e:
            self.logger.warning(f"Not syncing user {user_id}: {e}")
            result.errors.append(str(e))
            result.finished_at = self._clock()
            return result

        direction = SyncDirection(direction) if direction else prefs.sync_direction
        last = self.run_logs.last_successful(user_id)
        checkpoint = last.checkpoint_at if last else EPOCH
        sync_token = last.remote_sync_token if last else None
        next_token: Optional[str] = None

        self.logger.info(
            f"Starting full sync for user {user_id} "
            f"(direction={direction.value}, checkpoint={checkpoint.isoformat()})"
        )

        # Anything mutated after this instant is picked up by the next run
        snapshot_at = self._clock()

        try:
            local_changed = [
                event for event in self.events.list_changed_since(user_id, checkpoint)
                if not event.written_by_sync
            ]
            change_set = await self._remote(
                self.remote.list_changed_since(user_id, checkpoint, sync_token)
            )
            next_token = change_set.next_sync_token
            for message in change_set.invalid:
                self.logger.error(message)
                result.errors.append(message)

            remote_changed = [
                remote for remote in change_set.events
                if remote.updated_at > checkpoint and not self._is_echo(user_id, remote)
            ]
            plan = build_sync_plan(
                local_changed,
                remote_changed,
                lambda external_id: self.events.get_by_external_id(user_id, external_id),
                direction,
                held={c.remote_external_id for c in self.conflicts.list_pending(user_id)},
            )
            self.logger.debug(
                f"Planned {len(plan)} items from {len(local_changed)} local "
                f"and {len(remote_changed)} remote changes"
            )

            for item in plan:
                result.events_processed += 1
                try:
                    await self._apply_planned(user_id, item, prefs, result)
                except ITEM_ERRORS as e:
                    message = f"{item.action.value} {item.label}: {e}"
                    self.logger.error(f"Sync item failed: {message}")
                    result.errors.append(message)

        except Exception as e:
            self.logger.exception(f"Full sync for user {user_id} aborted: {e}")
            result.errors.append(f"Sync aborted: {e}")

        return self._finish(
            user_id, RunKind.FULL_SYNC, direction, result, next_token, checkpoint_at=snapshot_at
        )

    def _finish(
        self,
        user_id: str,
        kind: RunKind,
        direction: SyncDirection,
        result: SyncResult,
        remote_sync_token: Optional[str] = None,
        checkpoint_at: Optional[datetime] = None
    ) -> SyncResult:
        """Stamp the result and append its log row."""
        result.finished_at = self._clock()
        result.success = not result.errors

        log = SyncRunLog(
            user_id=user_id,
            kind=kind,
            direction=direction,
            started_at=result.started_at,
            finished_at=result.finished_at,
            success=result.success,
            events_processed=result.events_processed,
            events_created=result.events_created,
            events_updated=result.events_updated,
            events_deleted=result.events_deleted,
            conflicts_detected=result.conflicts_detected,
            errors=list(result.errors),
            remote_sync_token=remote_sync_token,
            checkpoint_at=checkpoint_at,
        )
        try:
            stored = self.run_logs.append(log)
            result.log_id = stored.id
        except Exception as e:
            self.logger.exception(f"Failed to write sync log for user {user_id}: {e}")
            result.errors.append(f"Failed to write sync log: {e}")
            result.success = False

        level = logging.INFO if result.success else logging.WARNING
        self.logger.log(
            level,
            f"{kind.value} for user {user_id} finished: success={result.success} "
            f"created={result.events_created} updated={result.events_updated} "
            f"deleted={result.events_deleted} conflicts={result.conflicts_detected} "
            f"errors={len(result.errors)}"
        )
        return result

    async def _apply_planned(
        self,
        user_id: str,
        item: PlannedChange,
        prefs: SyncPreferences,
        result: SyncResult
    ) -> None:
        action = item.action

        if action == PlanAction.SKIP:
            return

        if action == PlanAction.CONFLICT:
            await self._record_conflict(user_id, item, prefs, result)
            return

        if action == PlanAction.HOLD:
            self._refresh_conflict(user_id, item)
            return

        if action in (PlanAction.PUSH_CREATE, PlanAction.PUSH_UPDATE, PlanAction.PUSH_DELETE):
            outcome = await self._push_event(user_id, item.local)
        elif action == PlanAction.PULL_CREATE:
            self.events.upsert(CalendarEvent.from_remote(user_id, item.remote), synced=True)
            outcome = 'created'
        elif action == PlanAction.PULL_UPDATE:
            self.events.upsert(item.local.apply_fields(item.remote), synced=True)
            outcome = 'updated'
        elif action == PlanAction.PULL_DELETE:
            self.events.tombstone(item.local.id, synced=True)
            outcome = 'deleted'
        else:
            raise InvalidEventError(f"Unknown plan action {action}")

        self._count(result, outcome)
        self.logger.debug(f"{action.value} {item.label}: {outcome}")

    @staticmethod
    def _count(result: SyncResult, outcome: Optional[str]) -> None:
        if outcome == 'created':
            result.events_created += 1
        elif outcome == 'updated':
            result.events_updated += 1
        elif outcome == 'deleted':
            result.events_deleted += 1

    async def _push_event(self, user_id: str, event: CalendarEvent) -> Optional[str]:
        """Write a local event's state to the provider.

        A linked event whose provider copy has vanished is re-created and relinked.

        Returns:
            'created', 'updated', 'deleted', or None when nothing was written
        """
        if event.is_deleted:
            if event.external_id is None:
                return None
            await self._remote(self.remote.delete(user_id, event.external_id))
            return 'deleted'

        fields = event.to_fields()
        if event.external_id is not None:
            try:
                pushed = await self._remote(self.remote.update(user_id, event.external_id, fields))
                self._record_pushed(event, pushed)
                return 'updated'
            except EventNotFoundError:
                self.logger.warning(
                    f"Remote event {event.external_id} for '{event.title}' is gone; re-creating"
                )

        created = await self._remote(self.remote.create(user_id, fields))
        self._record_pushed(event, created)
        return 'created'

    def _record_pushed(self, event: CalendarEvent, pushed: RemoteEvent) -> None:
        """Link the local row to the provider version just written."""
        current = self.events.get_by_id(event.id) or event
        linked = current.model_copy(update={
            'external_id': pushed.external_id,
            'remote_updated_at': pushed.updated_at,
        })
        # Only an untouched row may be hidden from the next run
        unchanged = current.is_deleted == event.is_deleted and current.same_content(event)
        self.events.upsert(linked, synced=unchanged)

    def _is_echo(self, user_id: str, remote: RemoteEvent) -> bool:
        local = self.events.get_by_external_id(user_id, remote.external_id)
        return local is not None and local.is_echo(remote)

    async def _record_conflict(
        self,
        user_id: str,
        item: PlannedChange,
        prefs: SyncPreferences,
        result: SyncResult
    ) -> None:
        conflict = self.conflicts.create(SyncConflict(
            user_id=user_id,
            local_event_id=item.local.id if item.local else None,
            remote_external_id=item.remote.external_id,
            conflict_type=item.conflict_type,
            local_snapshot=item.local,
            remote_snapshot=item.remote,
            detected_at=self._clock(),
        ))
        result.conflicts_detected += 1
        self.logger.warning(
            f"Conflict detected for {item.label}: {conflict.conflict_type.value} "
            f"({', '.join(conflict.changed_fields()) or 'deletion'})"
        )

        if prefs.auto_resolve_conflicts:
            resolution = self.conflict_resolver.suggest(conflict)
            await self._apply_resolution(conflict, resolution, None)
            self.conflicts.resolve(conflict.id, resolution, self._clock())
            self.logger.info(f"Auto-resolved conflict {conflict.id} as {resolution.value}")

    def _refresh_conflict(self, user_id: str, item: PlannedChange) -> None:
        """Fold changes made while a conflict is pending into its snapshots."""
        external_id = item.remote.external_id if item.remote else item.local.external_id
        conflict = self.conflicts.find_pending(user_id, external_id)
        if conflict is None:
            return

        local = item.local or conflict.local_snapshot
        remote = item.remote or conflict.remote_snapshot
        if local is None or local.is_deleted or remote.deleted:
            conflict_type = ConflictType.DELETION
        else:
            conflict_type = ConflictType.MODIFICATION

        self.conflicts.update_snapshots(conflict.id, local, remote, conflict_type)
        self.logger.info(f"Held {item.label} behind pending conflict {conflict.id}")

    async def sync_single_event(
        self,
        user_id: str,
        event_id: UUID,
        direction: Optional[Union[SyncDirection, str]] = None
    ) -> SyncResult:
        """Sync one local event immediately.

        local_to_remote (and bidirectional) pushes the local state; remote_to_local
        refreshes the local row from the provider copy.

        Args:
            user_id: Owning user
            event_id: Internal event ID
            direction: Override of the user's configured direction

        Returns:
            Sync result, logged as a single_event run
        """
        result = SyncResult(started_at=self._clock())

        try:
            prefs = self._require_preferences(user_id)
        except (NotConfiguredError, SyncDisabledError) as e:
            self.logger.warning(f"Not syncing event {event_id} for user {user_id}: {e}")
            result.errors.append(str(e))
            result.finished_at = self._clock()
            return result

        direction = SyncDirection(direction) if direction else prefs.sync_direction
        result.events_processed = 1

        try:
            event = self.events.get_by_id(UUID(str(event_id)))
            if event is None or event.user_id != user_id:
                raise InvalidEventError(f"Event {event_id} not found for user {user_id}")
            if event.external_id and self.conflicts.find_pending(user_id, event.external_id):
                raise InvalidEventError(
                    f"Event {event_id} has a pending conflict; resolve it first"
                )

            if direction == SyncDirection.REMOTE_TO_LOCAL:
                outcome = await self._pull_event(user_id, event)
            else:
                outcome = await self._push_event(user_id, event)
            self._count(result, outcome)

        except ITEM_ERRORS as e:
            self.logger.error(f"Single event sync failed for {event_id}: {e}")
            result.errors.append(str(e))
        except Exception as e:
            self.logger.exception(f"Single event sync for {event_id} aborted: {e}")
            result.errors.append(f"Sync aborted: {e}")

        return self._finish(user_id, RunKind.SINGLE_EVENT, direction, result)

    async def _pull_event(self, user_id: str, event: CalendarEvent) -> Optional[str]:
        """Refresh a linked local event from the provider copy."""
        if event.external_id is None:
            raise InvalidEventError(f"Event {event.id} is not linked to a remote event")

        try:
            remote = await self._remote(self.remote.get(user_id, event.external_id))
        except EventNotFoundError:
            remote = None

        if remote is None or remote.deleted:
            if event.is_deleted:
                return None
            self.events.tombstone(event.id, synced=True)
            return 'deleted'

        if not event.is_deleted and event.same_content(remote):
            return None
        self.events.upsert(event.apply_fields(remote), synced=True)
        return 'updated'

    def get_pending_conflicts(self, user_id: str) -> List[SyncConflict]:
        """Get a user's unresolved conflicts."""
        return self.conflicts.list_pending(user_id)

    async def resolve_conflict(
        self,
        conflict_id: UUID,
        resolution: Union[ConflictResolution, str],
        user_id: str,
        merged: Optional[EventFields] = None
    ) -> bool:
        """Apply a user's choice to a pending conflict.

        Args:
            conflict_id: Conflict ID
            resolution: keep_local, keep_remote or merge
            user_id: User the conflict must belong to
            merged: Caller-merged content, required for merge

        Returns:
            True if applied and recorded; False if applying failed and the
            conflict stays pending

        Raises:
            ConflictNotFoundError: If the conflict is missing or not the user's
            AlreadyResolvedError: If the conflict was already resolved
            InvalidEventError: If merge is requested without merged content
        """
        conflict = self.conflicts.get(UUID(str(conflict_id)))
        if conflict is None or conflict.user_id != user_id:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        if not conflict.is_pending:
            raise AlreadyResolvedError(
                f"Conflict {conflict_id} already resolved as {conflict.resolution.value}"
            )

        resolution = ConflictResolution(resolution)
        if resolution == ConflictResolution.MERGE and merged is None:
            raise InvalidEventError("Merge resolution requires merged event fields")

        try:
            await self._apply_resolution(conflict, resolution, merged)
        except ITEM_ERRORS as e:
            self.logger.error(f"Failed to apply {resolution.value} to conflict {conflict_id}: {e}")
            return False

        self.conflicts.resolve(conflict.id, resolution, self._clock())
        self.logger.info(f"Resolved conflict {conflict_id} as {resolution.value}")
        return True

    async def _apply_resolution(
        self,
        conflict: SyncConflict,
        resolution: ConflictResolution,
        merged: Optional[EventFields]
    ) -> None:
        user_id = conflict.user_id
        current = (
            self.events.get_by_id(conflict.local_event_id) if conflict.local_event_id else None
        )

        if resolution == ConflictResolution.KEEP_LOCAL:
            snapshot = conflict.local_snapshot
            if snapshot is None:
                raise InvalidEventError(f"Conflict {conflict.id} has no local version to keep")
            await self._push_event(user_id, snapshot)

        elif resolution == ConflictResolution.KEEP_REMOTE:
            remote = conflict.remote_snapshot
            if remote.deleted:
                if current is not None and not current.is_deleted:
                    self.events.tombstone(current.id, synced=True)
            elif current is not None:
                restored = current.apply_fields(remote)
                restored.external_id = remote.external_id
                self.events.upsert(restored, synced=True)
            else:
                self.events.upsert(CalendarEvent.from_remote(user_id, remote), synced=True)

        elif resolution == ConflictResolution.MERGE:
            if current is None:
                current = CalendarEvent(
                    user_id=user_id,
                    external_id=conflict.remote_external_id,
                    start_at=merged.start_at or conflict.remote_snapshot.start_at,
                )
            stored = self.events.upsert(current.apply_fields(merged))
            await self._push_event(user_id, stored)

    def update_sync_preferences(
        self,
        user_id: str,
        partial: Union[SyncPreferencesUpdate, Dict[str, Any]]
    ) -> bool:
        """Create or partially update a user's preferences.

        Returns:
            False if the update was rejected as invalid
        """
        try:
            prefs = self.preferences.upsert(user_id, partial)
        except ValidationError as e:
            self.logger.warning(f"Rejected preference update for user {user_id}: {e}")
            return False
        self.logger.info(
            f"Preferences for user {user_id}: enabled={prefs.sync_enabled} "
            f"every {prefs.sync_frequency_minutes}m direction={prefs.sync_direction.value}"
        )
        return True

    def get_sync_preferences(self, user_id: str) -> Optional[SyncPreferences]:
        """Get a user's preferences, or None if never configured."""
        return self.preferences.get(user_id)

    def get_sync_statistics(self, days: int = 30) -> Dict[str, Any]:
        """Summarize sync runs over the past N days."""
        return self.run_logs.statistics(days)

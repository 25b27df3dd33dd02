"""Tests for the SQLAlchemy stores."""

from datetime import datetime, timedelta

import pytest
import pytz
from pydantic import ValidationError

from famcal_sync.errors import AlreadyResolvedError, ConflictNotFoundError, InvalidEventError
from famcal_sync.models import (
    CalendarEvent, ConflictResolution, ConflictType, RemoteEvent, RunKind, SyncConflict, SyncDirection,
    SyncRunLog
)


class TestSqlEventStore:
    """Tests for SqlEventStore."""

    def test_upsert_stamps_and_reads_back(self, events, make_local):
        event = make_local(title="Piano lesson", location="Music school")

        stored = events.get_by_id(event.id)

        assert stored.title == "Piano lesson"
        assert stored.location == "Music school"
        assert stored.start_at.tzinfo is not None
        assert stored.updated_at == event.updated_at

    def test_updated_at_strictly_increases(self, events, make_local):
        event = make_local()
        first = event.updated_at

        again = events.upsert(event)

        assert again.updated_at > first

    def test_list_changed_since_includes_tombstones(self, events, make_local, clock):
        before = make_local(title="Old")
        checkpoint = clock()
        make_local(title="New")
        events.tombstone(before.id)

        result = events.list_changed_since('alice', checkpoint)

        assert [e.title for e in result] == ["New", "Old"]
        assert result[1].is_deleted

    def test_sync_writes_are_marked_until_the_next_edit(self, events, make_local, clock):
        event = make_local()
        assert not event.written_by_sync

        remote = RemoteEvent(
            external_id='g7', title="Piano (moved)", start_at=event.start_at, updated_at=clock()
        )
        pulled = events.upsert(event.apply_fields(remote), synced=True)
        assert pulled.written_by_sync
        assert pulled.remote_updated_at == remote.updated_at
        assert pulled.is_echo(remote)

        edited = events.upsert(pulled.model_copy(update={'title': "Piano (Tuesdays)"}))
        assert not edited.written_by_sync
        assert edited.remote_updated_at == remote.updated_at

        events.tombstone(edited.id, synced=True)
        assert events.get_by_id(edited.id).written_by_sync

    def test_changes_are_scoped_per_user(self, events, make_local):
        make_local('alice')
        make_local('bob')

        assert len(events.list_changed_since('bob', datetime(2000, 1, 1, tzinfo=pytz.UTC))) == 1

    def test_tombstone_missing_event(self, events):
        with pytest.raises(InvalidEventError):
            events.tombstone(CalendarEvent(user_id='alice', start_at=datetime.now(pytz.UTC)).id)

    def test_get_by_external_id(self, events, make_local):
        event = make_local(external_id='g42')

        assert events.get_by_external_id('alice', 'g42').id == event.id
        assert events.get_by_external_id('bob', 'g42') is None

    def test_list_events_hides_tombstones(self, events, make_local):
        kept = make_local(title="Kept")
        gone = make_local(title="Gone")
        events.tombstone(gone.id)

        assert [e.id for e in events.list_events('alice')] == [kept.id]
        assert len(events.list_events('alice', include_deleted=True)) == 2

    def test_purge_tombstones(self, events, make_local, clock):
        gone = make_local(title="Gone")
        make_local(title="Kept")
        events.tombstone(gone.id)
        clock.advance(days=31)

        removed = events.purge_tombstones(clock() - timedelta(days=30))

        assert removed == 1
        assert events.get_by_id(gone.id) is None
        assert len(events.list_events('alice')) == 1


class TestSqlSyncPreferenceStore:
    """Tests for SqlSyncPreferenceStore."""

    def test_first_upsert_creates_defaults(self, preferences):
        assert preferences.get('alice') is None

        prefs = preferences.upsert('alice', {'sync_direction': 'local_to_remote'})

        assert prefs.sync_enabled
        assert prefs.sync_frequency_minutes == 15
        assert prefs.sync_direction == SyncDirection.LOCAL_TO_REMOTE
        assert preferences.get('alice') == prefs

    def test_partial_update_keeps_other_fields(self, preferences):
        preferences.upsert('alice', {'sync_frequency_minutes': 60})

        prefs = preferences.upsert('alice', {'sync_enabled': False})

        assert prefs.sync_frequency_minutes == 60
        assert not prefs.sync_enabled

    def test_invalid_update_is_rejected(self, preferences):
        with pytest.raises(ValidationError):
            preferences.upsert('alice', {'sync_frequency_minutes': 2})
        assert preferences.get('alice') is None

    def test_list_enabled(self, preferences):
        preferences.upsert('alice', {})
        preferences.upsert('bob', {'sync_enabled': False})

        assert [p.user_id for p in preferences.list_enabled()] == ['alice']


class TestSqlConflictStore:
    """Tests for SqlConflictStore."""

    def _conflict(self, make_local, user_id='alice'):
        local = make_local(user_id, external_id='g1')
        remote = RemoteEvent(
            external_id='g1', title="Remote", start_at=local.start_at, updated_at=local.updated_at
        )
        return SyncConflict(
            user_id=user_id,
            local_event_id=local.id,
            remote_external_id='g1',
            local_snapshot=local,
            remote_snapshot=remote,
        )

    def test_create_and_list_pending(self, conflicts, make_local):
        created = conflicts.create(self._conflict(make_local))

        pending = conflicts.list_pending('alice')

        assert [c.id for c in pending] == [created.id]
        assert pending[0].local_snapshot.title == "Piano lesson"
        assert pending[0].remote_snapshot.title == "Remote"
        assert conflicts.find_pending('alice', 'g1').id == created.id
        assert conflicts.list_pending('bob') == []

    def test_resolve_keeps_row_for_audit(self, conflicts, make_local, clock):
        created = conflicts.create(self._conflict(make_local))
        resolved_at = clock()

        resolved = conflicts.resolve(created.id, ConflictResolution.MERGE, resolved_at)

        assert resolved.resolution == ConflictResolution.MERGE
        assert resolved.resolved_at == resolved_at
        assert conflicts.list_pending('alice') == []
        assert conflicts.find_pending('alice', 'g1') is None
        assert conflicts.get(created.id) is not None

    def test_resolve_twice(self, conflicts, make_local, clock):
        created = conflicts.create(self._conflict(make_local))
        first_at = clock()
        conflicts.resolve(created.id, ConflictResolution.KEEP_LOCAL, first_at)

        with pytest.raises(AlreadyResolvedError):
            conflicts.resolve(created.id, ConflictResolution.KEEP_REMOTE, clock())

        stored = conflicts.get(created.id)
        assert stored.resolution == ConflictResolution.KEEP_LOCAL
        assert stored.resolved_at == first_at

    def test_resolve_missing(self, conflicts, make_local, clock):
        with pytest.raises(ConflictNotFoundError):
            conflicts.resolve(self._conflict(make_local).id, ConflictResolution.KEEP_LOCAL, clock())

    def test_modification_times_default_to_snapshots(self, conflicts, make_local):
        conflict = self._conflict(make_local)

        stored = conflicts.get(conflicts.create(conflict).id)

        assert stored.local_modified_at == conflict.local_snapshot.updated_at
        assert stored.remote_modified_at == conflict.remote_snapshot.updated_at

    def test_update_snapshots(self, conflicts, make_local, clock):
        created = conflicts.create(self._conflict(make_local))
        remote = RemoteEvent(external_id='g1', deleted=True, updated_at=clock())

        updated = conflicts.update_snapshots(
            created.id, created.local_snapshot, remote, ConflictType.DELETION
        )

        assert updated.conflict_type == ConflictType.DELETION
        assert updated.remote_snapshot.deleted
        assert updated.remote_modified_at == remote.updated_at
        assert conflicts.get(created.id).remote_snapshot.deleted

        conflicts.resolve(created.id, ConflictResolution.KEEP_REMOTE, clock())
        with pytest.raises(AlreadyResolvedError):
            conflicts.update_snapshots(created.id, None, remote, ConflictType.DELETION)


class TestSqlSyncRunLogStore:
    """Tests for SqlSyncRunLogStore."""

    def _log(self, clock, success=True, kind=RunKind.FULL_SYNC, user_id='alice', **counts):
        started = clock()
        return SyncRunLog(
            user_id=user_id,
            kind=kind,
            started_at=started,
            finished_at=clock(),
            success=success,
            **counts
        )

    def test_last_successful_ignores_failures_and_single_events(self, run_logs, clock):
        good = run_logs.append(self._log(clock, remote_sync_token='token-1'))
        run_logs.append(self._log(clock, success=False, errors=["offline"]))
        run_logs.append(self._log(clock, kind=RunKind.SINGLE_EVENT))

        last = run_logs.last_successful('alice')

        assert last.id == good.id
        assert last.remote_sync_token == 'token-1'
        assert run_logs.latest('alice').kind == RunKind.SINGLE_EVENT

    def test_errors_round_trip(self, run_logs, clock):
        stored = run_logs.append(self._log(clock, success=False, errors=["a", "b"]))
        assert run_logs.latest('alice').errors == ["a", "b"]
        assert stored.errors == ["a", "b"]

    def test_recent_and_statistics(self, run_logs, clock):
        run_logs.append(self._log(clock, events_created=2, conflicts_detected=1))
        run_logs.append(self._log(clock, success=False, user_id='bob', events_updated=3))

        assert len(run_logs.recent()) == 2
        assert len(run_logs.recent('bob')) == 1

        stats = run_logs.statistics(days=30)
        assert stats['total_runs'] == 2
        assert stats['successful_runs'] == 1
        assert stats['failed_runs'] == 1
        assert stats['events_created'] == 2
        assert stats['events_updated'] == 3
        assert stats['conflicts_detected'] == 1
        assert stats['average_duration_ms'] == 1

    def test_checkpoint_and_duration_round_trip(self, run_logs, clock):
        log = self._log(clock)
        checkpoint = log.started_at + timedelta(microseconds=500)

        run_logs.append(log.model_copy(update={'checkpoint_at': checkpoint}))
        run_logs.append(self._log(clock, kind=RunKind.SINGLE_EVENT))

        last = run_logs.last_successful('alice')
        assert last.checkpoint_at == checkpoint
        assert last.duration_ms == 1
        # Without a snapshot time the run is checkpointed at its start
        assert run_logs.latest('alice').checkpoint_at == run_logs.latest('alice').started_at

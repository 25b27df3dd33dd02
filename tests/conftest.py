import asyncio
import itertools
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from famcal_sync.config import Settings
from famcal_sync.database import DatabaseManager
from famcal_sync.models import CONTENT_FIELDS, CalendarEvent, ChangeSet, EventFields, RemoteEvent
from famcal_sync.services import EventNotFoundError, RemoteCalendarClient
from famcal_sync.stores import (
    SqlConflictStore, SqlEventStore, SqlSyncPreferenceStore, SqlSyncRunLogStore
)
from famcal_sync.sync_engine import SyncOrchestrator


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    return TestSettings(
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        **overrides
    )


class TickingClock:
    """Deterministic clock that moves forward a little on every read."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(milliseconds=1)):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)
        self.step = step

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryCalendar(RemoteCalendarClient):
    """Remote calendar double keeping one event dict per user."""

    def __init__(self, settings, clock):
        super().__init__(settings, 'memory')
        self.clock = clock
        self.events: Dict[str, Dict[str, RemoteEvent]] = {}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.list_requests: List[Tuple[datetime, Optional[str]]] = []
        # (operation, title) or operation -> exception to raise
        self.fail_on: Dict[object, Exception] = {}
        # (operation, title) or operation -> seconds to stall
        self.stall_on: Dict[object, float] = {}
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)

    async def _enter(self, op: str, title: Optional[str] = None) -> None:
        self.calls.append((op, title))
        delay = self.stall_on.get((op, title), self.stall_on.get(op))
        if delay:
            await asyncio.sleep(delay)
        error = self.fail_on.get((op, title), self.fail_on.get(op))
        if error is not None:
            raise error

    def writes(self) -> List[Tuple[str, Optional[str]]]:
        return [call for call in self.calls if call[0] in ('create', 'update', 'delete')]

    def _calendar(self, user_id: str) -> Dict[str, RemoteEvent]:
        return self.events.setdefault(user_id, {})

    def _store(self, user_id: str, external_id: str, fields: EventFields, deleted: bool = False):
        event = RemoteEvent(
            external_id=external_id,
            updated_at=self.clock(),
            deleted=deleted,
            **{name: getattr(fields, name) for name in CONTENT_FIELDS}
        )
        self._calendar(user_id)[external_id] = event
        return event

    async def list_changed_since(self, user_id, since, sync_token=None) -> ChangeSet:
        self.list_requests.append((since, sync_token))
        await self._enter('list')
        changed = [e for e in self._calendar(user_id).values() if e.updated_at > since]
        return ChangeSet(
            events=sorted(changed, key=lambda e: e.updated_at),
            next_sync_token=f"token-{next(self._tokens)}",
        )

    async def get(self, user_id, external_id) -> RemoteEvent:
        await self._enter('get')
        event = self._calendar(user_id).get(external_id)
        if event is None:
            raise EventNotFoundError(external_id)
        return event

    async def create(self, user_id, fields) -> RemoteEvent:
        await self._enter('create', fields.title)
        return self._store(user_id, f"g{next(self._ids)}", fields)

    async def update(self, user_id, external_id, fields) -> RemoteEvent:
        await self._enter('update', fields.title)
        if external_id not in self._calendar(user_id):
            raise EventNotFoundError(external_id)
        return self._store(user_id, external_id, fields)

    async def delete(self, user_id, external_id) -> None:
        await self._enter('delete')
        existing = self._calendar(user_id).get(external_id)
        if existing is not None and not existing.deleted:
            self._store(user_id, external_id, existing, deleted=True)

    # Edits made directly in Google Calendar by the user

    def remote_add(self, user_id: str, **fields) -> RemoteEvent:
        return self._store(user_id, f"g{next(self._ids)}", EventFields(**fields))

    def remote_edit(self, user_id: str, external_id: str, **changes) -> RemoteEvent:
        current = self._calendar(user_id)[external_id]
        data = {name: getattr(current, name) for name in CONTENT_FIELDS}
        data.update(changes)
        return self._store(user_id, external_id, EventFields(**data))

    def remote_delete(self, user_id: str, external_id: str) -> RemoteEvent:
        return self._store(user_id, external_id, self._calendar(user_id)[external_id], deleted=True)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path, request_timeout_seconds=0.2)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    yield manager
    manager.dispose()


@pytest.fixture
def events(db_manager, clock):
    return SqlEventStore(db_manager, clock=clock)


@pytest.fixture
def preferences(db_manager, clock):
    return SqlSyncPreferenceStore(db_manager, clock=clock)


@pytest.fixture
def conflicts(db_manager):
    return SqlConflictStore(db_manager)


@pytest.fixture
def run_logs(db_manager, clock):
    return SqlSyncRunLogStore(db_manager, clock=clock)


@pytest.fixture
def remote(settings, clock):
    return InMemoryCalendar(settings, clock)


@pytest.fixture
def orchestrator(settings, events, remote, preferences, conflicts, run_logs, clock):
    return SyncOrchestrator(
        settings,
        events=events,
        remote=remote,
        preferences=preferences,
        conflicts=conflicts,
        run_logs=run_logs,
        clock=clock,
    )


@pytest.fixture
def user(orchestrator):
    """A user with default preferences (enabled, bidirectional)."""
    assert orchestrator.update_sync_preferences('alice', {})
    return 'alice'


@pytest.fixture
def make_local(events, clock):
    """Create a local event the way the family app would."""
    def _make(user_id='alice', title='Piano lesson', hours_from_now=24, **extra):
        start = clock.now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=hours_from_now)
        return events.upsert(CalendarEvent(
            user_id=user_id,
            title=title,
            start_at=start,
            end_at=start + timedelta(hours=1),
            **extra
        ))
    return _make

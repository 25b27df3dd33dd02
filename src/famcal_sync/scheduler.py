"""Periodic sync trigger with a per-user in-flight guard and a status board."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar, Union
from uuid import UUID

from .models import (
    ConflictResolution, EventFields, SchedulerState, SyncDirection, SyncPreferences, SyncResult,
    SyncRunLog, SyncStatus, utcnow
)
from .sync_engine import SyncOrchestrator

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus], None]

T = TypeVar('T')


def _result_from_log(log: SyncRunLog) -> SyncResult:
    return SyncResult(
        success=log.success,
        log_id=log.id,
        events_processed=log.events_processed,
        events_created=log.events_created,
        events_updated=log.events_updated,
        events_deleted=log.events_deleted,
        conflicts_detected=log.conflicts_detected,
        errors=list(log.errors),
        started_at=log.started_at,
        finished_at=log.finished_at,
    )


class SyncScheduler:
    """Drives full syncs for every enabled user.

    Each user moves idle -> checking -> syncing -> idle. A user with a sync in
    flight is skipped by ticks and manual triggers alike; nothing is queued.
    Single-event syncs and conflict resolutions take the same per-user slot.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        poll_interval_seconds: float = 60,
        min_attempt_spacing_seconds: float = 60,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize scheduler.

        Args:
            orchestrator: Orchestrator that performs the runs
            poll_interval_seconds: Seconds between ticks
            min_attempt_spacing_seconds: Cooldown after any attempt, successful or not
            clock: Source of the current time
        """
        self.orchestrator = orchestrator
        self.preferences = orchestrator.preferences
        self.run_logs = orchestrator.run_logs
        self.conflicts = orchestrator.conflicts
        self.poll_interval_seconds = poll_interval_seconds
        self.min_attempt_spacing = timedelta(seconds=min_attempt_spacing_seconds)
        self._clock = clock or utcnow

        self._states: Dict[str, SchedulerState] = {}
        self._in_flight: Set[str] = set()
        self._last_attempt: Dict[str, Optional[datetime]] = {}
        self._last_result: Dict[str, SyncResult] = {}
        self._listeners: List[StatusListener] = []

        self._wake = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.logger = logger.getChild('scheduler')

    @classmethod
    def from_settings(cls, orchestrator: SyncOrchestrator) -> 'SyncScheduler':
        settings = orchestrator.settings
        return cls(
            orchestrator,
            poll_interval_seconds=settings.poll_interval_seconds,
            min_attempt_spacing_seconds=settings.min_attempt_spacing_seconds,
            clock=orchestrator._clock,
        )

    def is_syncing(self, user_id: str) -> bool:
        return user_id in self._in_flight

    def state(self, user_id: str) -> SchedulerState:
        return self._states.get(user_id, SchedulerState.IDLE)

    def _set_state(self, user_id: str, state: SchedulerState) -> None:
        if self._states.get(user_id, SchedulerState.IDLE) == state:
            return
        self._states[user_id] = state
        self.logger.debug(f"User {user_id} -> {state.value}")
        self._notify(user_id)

    def _last_attempt_at(self, user_id: str) -> Optional[datetime]:
        if user_id not in self._last_attempt:
            # Seed from the log so a restart honours the cooldown
            latest = self.run_logs.latest(user_id)
            self._last_attempt[user_id] = latest.started_at if latest else None
        return self._last_attempt[user_id]

    def _next_sync_at(self, prefs: SyncPreferences) -> Optional[datetime]:
        """Earliest time at which a tick would sync this user."""
        if not prefs.sync_enabled:
            return None

        candidates = [self._clock()]
        last = self.run_logs.last_successful(prefs.user_id)
        if last is not None:
            candidates.append(last.finished_at + timedelta(minutes=prefs.sync_frequency_minutes))
        last_attempt = self._last_attempt_at(prefs.user_id)
        if last_attempt is not None:
            candidates.append(last_attempt + self.min_attempt_spacing)
        return max(candidates)

    def should_sync(self, prefs: SyncPreferences) -> bool:
        """Whether a tick would sync this user now.

        Args:
            prefs: The user's current preferences

        Returns:
            True when enabled, idle, due by frequency and past the cooldown
        """
        if not prefs.sync_enabled or self.is_syncing(prefs.user_id):
            return False
        return self._next_sync_at(prefs) <= self._clock()

    async def tick(self) -> List[SyncResult]:
        """Evaluate every enabled user once and sync the ones that are due.

        Returns:
            Results of the syncs started by this tick
        """
        due: List[str] = []
        for prefs in self.preferences.list_enabled():
            user_id = prefs.user_id
            if self.is_syncing(user_id):
                continue
            self._set_state(user_id, SchedulerState.CHECKING)
            if self.should_sync(prefs):
                due.append(user_id)
            else:
                self._set_state(user_id, SchedulerState.IDLE)

        if not due:
            return []

        self.logger.info(f"Tick: {len(due)} user(s) due for sync")
        results = await asyncio.gather(*(self._run(user_id) for user_id in due))
        return [result for result in results if result is not None]

    async def perform_sync(
        self,
        user_id: str,
        direction: Optional[Union[SyncDirection, str]] = None
    ) -> Optional[SyncResult]:
        """Sync a user immediately, ignoring frequency and cooldown.

        Args:
            user_id: User to sync
            direction: Override of the user's configured direction

        Returns:
            Sync result, or None if a sync for this user is already in flight
        """
        if self.is_syncing(user_id):
            self.logger.info(f"Sync already in progress for user {user_id}; ignoring trigger")
            return None
        self._set_state(user_id, SchedulerState.CHECKING)
        return await self._run(user_id, direction)

    async def sync_event(
        self,
        user_id: str,
        event_id: UUID,
        direction: Optional[Union[SyncDirection, str]] = None
    ) -> Optional[SyncResult]:
        """Sync one event now, unless a run for this user is in flight.

        Returns:
            Sync result, or None if the user is busy
        """
        return await self._exclusive(
            user_id,
            lambda: self.orchestrator.sync_single_event(user_id, event_id, direction)
        )

    async def resolve_conflict(
        self,
        user_id: str,
        conflict_id: UUID,
        resolution: Union[ConflictResolution, str],
        merged: Optional[EventFields] = None
    ) -> Optional[bool]:
        """Apply a conflict resolution, unless a run for this user is in flight.

        Returns:
            Whether the resolution was applied, or None if the user is busy

        Raises:
            Whatever SyncOrchestrator.resolve_conflict raises
        """
        return await self._exclusive(
            user_id,
            lambda: self.orchestrator.resolve_conflict(conflict_id, resolution, user_id, merged)
        )

    async def _run(
        self,
        user_id: str,
        direction: Optional[Union[SyncDirection, str]] = None
    ) -> Optional[SyncResult]:
        async def full_sync() -> SyncResult:
            self._last_attempt[user_id] = self._clock()
            result = await self.orchestrator.perform_full_sync(user_id, direction)
            self._last_result[user_id] = result
            return result

        return await self._exclusive(user_id, full_sync)

    async def _exclusive(
        self,
        user_id: str,
        operation: Callable[[], Awaitable[T]]
    ) -> Optional[T]:
        """Run an operation holding the user's in-flight slot."""
        if user_id in self._in_flight:
            self.logger.info(f"Sync already in progress for user {user_id}; ignoring request")
            return None

        # Claimed before the first await
        self._in_flight.add(user_id)
        self._set_state(user_id, SchedulerState.SYNCING)

        try:
            return await operation()
        finally:
            self._in_flight.discard(user_id)
            self._set_state(user_id, SchedulerState.IDLE)

    def status(self, user_id: str) -> SyncStatus:
        """Build the canonical sync status for a user."""
        prefs = self.preferences.get(user_id)
        last = self.run_logs.last_successful(user_id)

        last_result = self._last_result.get(user_id)
        if last_result is None:
            latest = self.run_logs.latest(user_id)
            last_result = _result_from_log(latest) if latest else None

        return SyncStatus(
            user_id=user_id,
            state=self.state(user_id),
            sync_enabled=bool(prefs and prefs.sync_enabled),
            last_sync_at=last.finished_at if last else None,
            last_attempt_at=self._last_attempt_at(user_id),
            next_sync_at=self._next_sync_at(prefs) if prefs else None,
            last_result=last_result,
            pending_conflicts=len(self.conflicts.list_pending(user_id)),
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener.

        Args:
            listener: Called with the user's SyncStatus on every state change

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, user_id: str) -> None:
        if not self._listeners:
            return
        status = self.status(user_id)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                self.logger.error(f"Status listener failed: {e}")

    def wake(self) -> None:
        """Run the next tick now instead of at the end of the interval."""
        if not self._wake.is_set():
            self._wake.set()

    async def run_forever(self) -> None:
        """Tick until stopped."""
        self._running = True
        self.logger.info(f"Scheduler started (poll every {self.poll_interval_seconds:g}s)")

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                # Keep the loop alive; the next tick retries
                self.logger.exception(f"Scheduler tick failed: {e}")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            finally:
                self._wake.clear()

        self.logger.info("Scheduler stopped")

    def start(self) -> asyncio.Task:
        """Run the scheduler as a background task on the current loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        """Stop ticking; an in-flight sync finishes first."""
        self._running = False
        self.wake()
        if self._task is not None:
            await self._task
            self._task = None

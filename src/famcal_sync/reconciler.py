"""Diff local and remote change sets into an ordered sync plan."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Collection, Dict, Iterable, List, Optional

from .models import CalendarEvent, ConflictType, RemoteEvent, SyncDirection


class PlanAction(str, Enum):
    """What the orchestrator should do with one item."""

    PUSH_CREATE = "push_create"
    PUSH_UPDATE = "push_update"
    PUSH_DELETE = "push_delete"
    PULL_CREATE = "pull_create"
    PULL_UPDATE = "pull_update"
    PULL_DELETE = "pull_delete"
    CONFLICT = "conflict"
    HOLD = "hold"  # A pending conflict owns this event
    SKIP = "skip"


@dataclass
class PlannedChange:
    """One reconciled item."""

    action: PlanAction
    local: Optional[CalendarEvent] = None
    remote: Optional[RemoteEvent] = None
    conflict_type: Optional[ConflictType] = None
    reason: str = ""

    @property
    def label(self) -> str:
        """Short human-readable identity for logs and error messages."""
        if self.local is not None:
            return f"'{self.local.title}' ({self.local.id})"
        if self.remote is not None:
            return f"'{self.remote.title}' (remote {self.remote.external_id})"
        return "<empty>"


def _plan_pair(
    local: CalendarEvent,
    remote: RemoteEvent,
) -> PlannedChange:
    """Both sides changed since the checkpoint."""
    if local.is_deleted and remote.deleted:
        return PlannedChange(PlanAction.SKIP, local, remote, reason="deleted_on_both_sides")

    if not local.is_deleted and not remote.deleted and local.same_content(remote):
        return PlannedChange(PlanAction.SKIP, local, remote, reason="converged")

    conflict_type = (
        ConflictType.DELETION if (local.is_deleted or remote.deleted) else ConflictType.MODIFICATION
    )
    return PlannedChange(
        PlanAction.CONFLICT, local, remote, conflict_type=conflict_type, reason="both_changed"
    )


def _plan_local_only(local: CalendarEvent, direction: SyncDirection) -> PlannedChange:
    """Local changed, provider side unchanged or never linked."""
    if not direction.pushes_local:
        return PlannedChange(PlanAction.SKIP, local, reason="direction")

    if local.external_id is None:
        if local.is_deleted:
            return PlannedChange(PlanAction.SKIP, local, reason="deleted_before_linking")
        return PlannedChange(PlanAction.PUSH_CREATE, local, reason="new_local")

    if local.is_deleted:
        return PlannedChange(PlanAction.PUSH_DELETE, local, reason="local_tombstone")
    return PlannedChange(PlanAction.PUSH_UPDATE, local, reason="local_changed")


def _plan_remote_only(
    remote: RemoteEvent,
    local: Optional[CalendarEvent],
    direction: SyncDirection,
) -> PlannedChange:
    """Provider changed, local side unchanged or absent."""
    if not direction.pulls_remote:
        return PlannedChange(PlanAction.SKIP, local, remote, reason="direction")

    if local is None:
        if remote.deleted:
            return PlannedChange(PlanAction.SKIP, None, remote, reason="deleted_before_import")
        return PlannedChange(PlanAction.PULL_CREATE, None, remote, reason="new_remote")

    if remote.deleted:
        if local.is_deleted:
            return PlannedChange(PlanAction.SKIP, local, remote, reason="already_deleted")
        return PlannedChange(PlanAction.PULL_DELETE, local, remote, reason="remote_deleted")

    if local.is_deleted or not local.same_content(remote):
        return PlannedChange(PlanAction.PULL_UPDATE, local, remote, reason="remote_changed")
    return PlannedChange(PlanAction.SKIP, local, remote, reason="already_applied")


def build_sync_plan(
    local_changed: Iterable[CalendarEvent],
    remote_changed: Iterable[RemoteEvent],
    find_local: Callable[[str], Optional[CalendarEvent]],
    direction: SyncDirection,
    held: Collection[str] = (),
) -> List[PlannedChange]:
    """Join local and remote changes on external ID and decide each item.

    Neither side of an event with a pending conflict is written until the
    conflict is resolved; its changes come back as HOLD items instead.

    Args:
        local_changed: Local events mutated since the checkpoint
        remote_changed: Provider events mutated since the checkpoint
        find_local: Looks up the (unchanged) local event linked to an external ID
        direction: Allowed flow of changes
        held: External IDs with a pending conflict

    Returns:
        One planned change per local item, then one per unpaired remote item
    """
    remote_by_id: Dict[str, RemoteEvent] = {}
    for remote in sorted(remote_changed, key=lambda r: r.updated_at):
        remote_by_id[remote.external_id] = remote

    plan: List[PlannedChange] = []
    paired: set = set()

    for local in local_changed:
        remote = remote_by_id.get(local.external_id) if local.external_id else None
        if local.external_id is not None and local.external_id in held:
            paired.add(local.external_id)
            plan.append(PlannedChange(PlanAction.HOLD, local, remote, reason="conflict_pending"))
        elif remote is not None:
            paired.add(remote.external_id)
            plan.append(_plan_pair(local, remote))
        else:
            plan.append(_plan_local_only(local, direction))

    for external_id, remote in remote_by_id.items():
        if external_id in paired:
            continue
        if external_id in held:
            plan.append(PlannedChange(
                PlanAction.HOLD, find_local(external_id), remote, reason="conflict_pending"
            ))
            continue
        plan.append(_plan_remote_only(remote, find_local(external_id), direction))

    return plan

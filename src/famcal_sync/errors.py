"""Sync-level exceptions."""


class SyncError(Exception):
    """Base exception for synchronization errors."""
    pass


class NotConfiguredError(SyncError):
    """No sync preferences exist for the user."""
    pass


class SyncDisabledError(SyncError):
    """Sync is switched off in the user's preferences."""
    pass


class ConflictNotFoundError(SyncError):
    """Conflict does not exist or belongs to another user."""
    pass


class AlreadyResolvedError(SyncError):
    """Conflict already carries a resolution."""
    pass


class InvalidEventError(SyncError):
    """An event could not be translated or applied as given."""
    pass

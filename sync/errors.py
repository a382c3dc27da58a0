"""Sync-side error types (fetch errors live in fetch.exceptions)."""


class SyncError(Exception):
    """Base class for failures inside a sync run."""


class ResolutionError(SyncError):
    """A title or asset path from a snapshot can't be matched or resolved."""


class RunAbortedError(SyncError):
    """Raised before any title is processed when a run can't start at all."""

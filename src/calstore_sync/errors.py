"""Run-level exceptions of the sync engine."""

from typing import Optional

from .models import SyncResult


class SyncRunError(Exception):
    """A sync run aborted.

    ``result`` carries the run summary (status=error) once the engine has
    finalized the run.
    """

    retryable = False

    def __init__(self, message: str, result: Optional[SyncResult] = None):
        super().__init__(message)
        self.result = result


class ProvisioningError(SyncRunError):
    """The target schema could not be resolved or created."""
    pass


class CursorExpiredError(SyncRunError):
    """The sync token was rejected and has been cleared; run again for a full sync."""

    retryable = True


class SyncConfigurationError(SyncRunError):
    """The sync config cannot run inbound (disabled or outbound-only)."""
    pass


class LeaseUnavailableError(SyncRunError):
    """Another run holds the lease for this sync config."""

    retryable = True

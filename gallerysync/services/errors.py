"""Error taxonomy for the sync engine."""


class SyncError(Exception):
    """Base class for sync engine errors."""
    pass


class PrerequisiteMissing(SyncError):
    """Raised when a stage runs before the stage it depends on has produced its artifact."""
    pass


class RemoteFetchError(SyncError):
    """Raised when the catalog API cannot be reached or returns an unusable response."""
    pass


class ResourceExhaustion(SyncError):
    """Raised when elapsed time or memory is close to the configured ceiling."""

    def __init__(self, message: str, reason: str = "time"):
        super().__init__(message)
        self.reason = reason


class PerItemFailure(SyncError):
    """Raised when a single case cannot be fetched or stored."""

    def __init__(self, case_id: int, message: str):
        super().__init__(f"Failed to process case {case_id}: {message}")
        self.case_id = case_id


class RegistryUnavailable(SyncError):
    """Raised when the job coordination API cannot be reached."""
    pass


class SecurityCheckFailed(SyncError):
    """Raised when a trigger request carries a missing or invalid token."""
    pass


class ScheduleConflict(SyncError):
    """Raised when registering a job while another one is still active."""
    pass

"""Exception hierarchy for logsync."""


class LogSyncError(Exception):
    """Base class for all logsync exceptions."""


class InvalidFormatError(LogSyncError, ValueError):
    """Raised when a textual representation cannot be parsed."""


class StorageError(LogSyncError, OSError):
    """Raised when the log store cannot read or write."""


class InconsistentLogError(StorageError):
    """Raised when events conflict with what a log already holds."""

    def __init__(self, message: str, rejected: list | None = None):
        super().__init__(message)
        self.rejected = rejected or []


class TransportError(LogSyncError, OSError):
    """Raised when talking to a remote endpoint fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailableError(TransportError):
    """Raised when the remote could not be reached at all."""

"""Exceptions raised by the backup engine.

All exceptions inherit from BackupCtlError. Everything raised while running a
single schedule is caught at the executor boundary and turned into a failed
outcome; only PersistenceError from the due-schedule query ends a cycle.
"""

from typing import Optional


class BackupCtlError(Exception):
    """Base exception for all backupctl errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class ConfigurationError(BackupCtlError):
    """Missing or invalid settings, e.g. no encryption key."""


class AuthenticationError(BackupCtlError):
    """Could not obtain a session from the cluster."""


class RemoteJobError(BackupCtlError):
    """Transport failure or unexpected answer from the cluster API."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DispatchError(RemoteJobError):
    """The cluster rejected the job submission."""


class PollingTimeoutError(BackupCtlError):
    """The task was still running when the poll ceiling was reached."""

    def __init__(self, task_id: str, attempts: int, waited_seconds: float):
        super().__init__(
            f"Backup timed out: task {task_id} still running after {attempts} status checks "
            f"({int(waited_seconds)} seconds)"
        )
        self.task_id = task_id
        self.attempts = attempts


class PollingCancelledError(BackupCtlError):
    """Polling stopped because shutdown was requested."""


class RemoteTerminalFailure(BackupCtlError):
    """The task finished with an exit status other than OK."""

    def __init__(self, task_id: str, exit_status: Optional[str]):
        super().__init__(f"Backup task {task_id} finished with status: {exit_status or 'unknown'}")
        self.task_id = task_id
        self.exit_status = exit_status


class PersistenceError(BackupCtlError):
    """A repository read or write failed."""


class NotificationError(BackupCtlError):
    """A notification could not be delivered."""

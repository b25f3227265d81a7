"""Custom exception hierarchy for the safeguard layer.

Every failure the coordination, monitoring and recovery components can raise
derives from SafeguardError, so callers (and the CLI) can catch the whole
family in one place while still reacting to specific cases.
"""

from typing import List, Optional


__all__ = [
    "SafeguardError",
    "StoreError",
    "RecordNotFoundError",
    "ConfigurationError",
    "CyclicDependencyError",
    "SnapshotExistsError",
    "GitCommandError",
    "RecoveryError",
    "ExperimentError",
    "AgentTimeoutError",
]


class SafeguardError(Exception):
    """Base exception for all safeguard errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        """Initialize SafeguardError.

        Args:
            message: Human-readable error description.
        """
        self.message = message
        super().__init__(message)


class StoreError(SafeguardError):
    """Raised when the shared key-value store cannot be read or written.

    Attributes:
        message: Human-readable error description.
        key: The store key involved, if any.
    """

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


class RecordNotFoundError(SafeguardError):
    """Raised when a status record, snapshot or experiment does not exist.

    Attributes:
        message: Human-readable error description.
        record_type: Kind of record that was looked up.
        record_id: Identifier that was looked up.
    """

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.record_type = record_type
        self.record_id = record_id


class ConfigurationError(SafeguardError):
    """Raised when a pipeline definition or setting is invalid."""


class CyclicDependencyError(ConfigurationError):
    """Raised when agent dependencies form a cycle.

    Attributes:
        message: Human-readable error description.
        cycle: Agent names along the detected cycle, first name repeated last.
    """

    def __init__(self, message: str, cycle: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.cycle = cycle or []


class SnapshotExistsError(SafeguardError):
    """Raised when a snapshot name is reused. Snapshots are write-once."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message)
        self.name = name


class GitCommandError(SafeguardError):
    """Raised when a git invocation exits non-zero.

    Attributes:
        message: Human-readable error description.
        command: The git arguments that were run.
        returncode: Process exit status.
        stderr: Captured standard error.
    """

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class RecoveryError(SafeguardError):
    """Raised when a rollback strategy cannot complete.

    The working tree is left as it was before the attempt; ``backup_ref`` names
    the recovery tag or backup directory that was taken before any change.

    Attributes:
        message: Human-readable error description.
        level: Rollback level that failed.
        backup_ref: Backup reference taken before the attempt, if any.
    """

    def __init__(
        self,
        message: str,
        level: Optional[str] = None,
        backup_ref: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.level = level
        self.backup_ref = backup_ref


class ExperimentError(SafeguardError):
    """Raised when an experiment sandbox cannot be set up or driven."""


class AgentTimeoutError(SafeguardError):
    """Raised when an external call (test run, agent invocation) times out.

    Attributes:
        message: Human-readable error description.
        timeout: The timeout that was exceeded, in seconds.
    """

    def __init__(self, message: str, timeout: Optional[float] = None) -> None:
        super().__init__(message)
        self.timeout = timeout

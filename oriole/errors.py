"""Exception hierarchy for the Oriole state core.

Each class carries the identifiers needed to diagnose the failure alongside a
readable message. Datastore driver errors that are not connection failures are
never wrapped; they reach the caller unmodified.
"""

from typing import Optional


class OrioleError(Exception):
    """Base class for all errors raised by this package."""


class DatastoreUnavailableError(OrioleError):
    """Raised when a scoped connection to the datastore cannot be opened.

    Nothing is committed and nothing is logged when this is raised. The caller
    is expected to retry the whole turn.
    """

    def __init__(self, *, reason: str, underlying: Optional[BaseException] = None) -> None:
        self.reason = reason
        self.underlying = underlying
        message = (
            f"Datastore unavailable: {reason}\n\n"
            "Remediation tips:\n"
            "  - Check DATABASE_URL or DB_HOST/DB_PORT/DB_NAME/DB_USER\n"
            "  - Verify the password source (DB_PASSWORD or DB_PASSWORD_PARAMETER)\n"
            "  - Retry the whole turn; no partial state was written"
        )
        super().__init__(message)


class CredentialError(OrioleError):
    """Raised when the credential source returns no usable secret."""


class LockError(OrioleError):
    """Raised on misuse of the experiment lock (e.g. nested acquisition)."""

    def __init__(self, experiment_id: int, message: str) -> None:
        self.experiment_id = experiment_id
        super().__init__(f"Experiment {experiment_id}: {message}")


class LockTimeoutError(LockError):
    """Raised when the experiment lock could not be acquired in time."""

    def __init__(self, experiment_id: int, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            experiment_id,
            f"lock not acquired within {timeout}s (another invocation holds it)",
        )


class LockNotHeldError(LockError):
    """Raised when in-turn state is read or written without holding the lock."""

    def __init__(self, experiment_id: int, operation: str) -> None:
        self.operation = operation
        super().__init__(experiment_id, f"{operation} requires the experiment lock")


class MalformedActionError(OrioleError):
    """Raised when an action record is rejected at append time."""

    def __init__(self, *, action_type: str, reason: str) -> None:
        self.action_type = action_type
        self.reason = reason
        super().__init__(f"Malformed {action_type} action: {reason}")


class ExperimentNotFoundError(OrioleError):
    def __init__(self, experiment_id: int) -> None:
        self.experiment_id = experiment_id
        super().__init__(f"Experiment {experiment_id} not found")


class MazeNotFoundError(OrioleError):
    def __init__(self, maze_id: Optional[int]) -> None:
        self.maze_id = maze_id
        if maze_id is None:
            super().__init__("Experiment has no maze assigned")
        else:
            super().__init__(f"Maze {maze_id} not found")


class ExperimentAlreadyFinalizedError(OrioleError):
    """Raised when finalize runs for an experiment that already has completed_at."""

    def __init__(self, experiment_id: int) -> None:
        self.experiment_id = experiment_id
        super().__init__(
            f"Experiment {experiment_id} is already finalized; "
            "the terminal transition happens exactly once"
        )


class UnknownActionError(OrioleError):
    def __init__(self, action_name: str) -> None:
        self.action_name = action_name
        super().__init__(f"Unknown action: {action_name}")

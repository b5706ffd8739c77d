"""
Oriole - state core for LLM maze-navigation experiments.

Stateless invocations reconstruct each experiment's position and spatial
memory from its append-only action log, serialize turns with a per-experiment
advisory lock, and finalize every run exactly once.

The datastore is injected; nothing is kept in module globals except the
process-wide credential cache and
rate-limit lookup.
"""

__version__ = "0.1.0"

# Entry points
from .state import StateManager, TurnSession
from .locking import ExperimentLock
from .finalizer import finalize
from .workflow import check_progress, classify_error, outcome_from_event, start_experiment
from .actions import dispatch, move, recall_all, recall_recent

# Datastore interfaces
from .persistence import (
    StateStore,
    StoreConnection,
    InMemoryStateStore,
    PostgresStateStore,
)
from .credentials import (
    CredentialCache,
    CredentialProvider,
    EnvCredentialProvider,
    ParameterStoreCredentialProvider,
)
from .rate_limits import RateLimitLookup

# Core schemas
from .schemas import (
    TileKind,
    Position,
    Maze,
    ActionKind,
    ActionRequest,
    ActionLogEntry,
    Experiment,
    ExperimentRequest,
    ExecutionStatus,
    ErrorKind,
    WorkflowError,
    LastError,
    StateSnapshot,
    FinalizeOutcome,
    FinalizeResult,
    MoveResult,
    RecallResult,
    ProgressReport,
)

# Errors
from .errors import (
    OrioleError,
    DatastoreUnavailableError,
    CredentialError,
    LockError,
    LockTimeoutError,
    LockNotHeldError,
    MalformedActionError,
    ExperimentNotFoundError,
    MazeNotFoundError,
    ExperimentAlreadyFinalizedError,
    UnknownActionError,
)

# Replay and perception helpers
from . import replay
from .vision import calculate_vision, describe_vision

__all__ = [
    # Entry points
    "StateManager",
    "TurnSession",
    "ExperimentLock",
    "finalize",
    "check_progress",
    "classify_error",
    "outcome_from_event",
    "start_experiment",
    "dispatch",
    "move",
    "recall_all",
    "recall_recent",
    # Datastore interfaces
    "StateStore",
    "StoreConnection",
    "InMemoryStateStore",
    "PostgresStateStore",
    "CredentialCache",
    "CredentialProvider",
    "EnvCredentialProvider",
    "ParameterStoreCredentialProvider",
    "RateLimitLookup",
    # Schemas
    "TileKind",
    "Position",
    "Maze",
    "ActionKind",
    "ActionRequest",
    "ActionLogEntry",
    "Experiment",
    "ExperimentRequest",
    "ExecutionStatus",
    "ErrorKind",
    "WorkflowError",
    "LastError",
    "StateSnapshot",
    "FinalizeOutcome",
    "FinalizeResult",
    "MoveResult",
    "RecallResult",
    "ProgressReport",
    # Errors
    "OrioleError",
    "DatastoreUnavailableError",
    "CredentialError",
    "LockError",
    "LockTimeoutError",
    "LockNotHeldError",
    "MalformedActionError",
    "ExperimentNotFoundError",
    "MazeNotFoundError",
    "ExperimentAlreadyFinalizedError",
    "UnknownActionError",
    # Helpers
    "replay",
    "calculate_vision",
    "describe_vision",
]

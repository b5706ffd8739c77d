"""Terminal state transition for an experiment.

RUNNING -> SUCCEEDED | FAILED | TIMED_OUT, exactly once.

"Execution completed" and "goal reached" are independent: a SUCCEEDED run may
or may not have found the goal, while a failed run never counts as having found
it. A second finalize call is rejected instead of overwriting the first result.
"""

from datetime import datetime, timezone
from typing import Optional

from . import replay
from .errors import ExperimentAlreadyFinalizedError, ExperimentNotFoundError
from .logging_utils import log_error, log_success
from .persistence import StateStore
from .schemas import (
    ErrorKind,
    ExecutionStatus,
    FinalizeOutcome,
    FinalizeResult,
    LastError,
    WorkflowError,
)


def classify_status(error: WorkflowError) -> ExecutionStatus:
    if error.kind == ErrorKind.TIMEOUT:
        return ExecutionStatus.TIMED_OUT
    return ExecutionStatus.FAILED


async def finalize(
    store: StateStore,
    experiment_id: int,
    outcome: FinalizeOutcome,
    *,
    now: Optional[datetime] = None,
) -> FinalizeResult:
    """Record the end of an experiment.

    Failure path: status from the error kind, structured last_error, goal_found False.
    Success path: SUCCEEDED; goal_found if the latest entry saw a GOAL tile (or the
    run already flagged it); last_error stays null.

    Raises:
        ExperimentNotFoundError: Unknown experiment id
        ExperimentAlreadyFinalizedError: completed_at was already set
    """
    completed_at = now or datetime.now(timezone.utc)

    async with store.connection() as conn:
        experiment = await conn.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        if experiment.is_finalized:
            raise ExperimentAlreadyFinalizedError(experiment_id)

        if outcome.explicit_failure:
            error = outcome.error or WorkflowError(kind=ErrorKind.UNKNOWN)
            status = classify_status(error)
            goal_found = False
            last_error = LastError(
                kind=error.kind,
                cause=error.cause,
                timestamp=completed_at,
                raw_error=error.raw_error,
            )
            failure_reason = error.cause
        else:
            latest = await conn.latest_action(experiment_id)
            goal_found = experiment.goal_found or replay.goal_visible(
                latest.tiles_seen if latest is not None else None
            )
            status = ExecutionStatus.SUCCEEDED
            last_error = None
            failure_reason = None

        # Conditional on completed_at IS NULL; loses to a concurrent finalize
        updated = await conn.finalize_experiment(
            experiment_id,
            execution_status=status,
            goal_found=goal_found,
            completed_at=completed_at,
            last_error=last_error,
            failure_reason=failure_reason,
        )
        if not updated:
            raise ExperimentAlreadyFinalizedError(experiment_id)

    if last_error is not None:
        log_error(
            f"Finalized experiment {experiment_id}: {status.value} "
            f"({last_error.kind.value}: {last_error.cause})"
        )
    else:
        log_success(f"Finalized experiment {experiment_id}: {status.value}, goal_found={goal_found}")

    return FinalizeResult(
        experiment_id=experiment_id,
        execution_status=status,
        goal_found=goal_found,
        completed_at=completed_at,
        last_error=last_error,
    )

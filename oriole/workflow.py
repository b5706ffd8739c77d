"""Boundary between the workflow engine and the state core.

The engine drives an experiment as a loop: start -> (agent turn -> progress
check)* -> finalize. It hands over raw payloads (error names, token counts);
this module converts them into typed values once, so nothing deeper in the
package ever inspects an engine error string.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .config import Config
from .errors import ExperimentNotFoundError, MazeNotFoundError
from .logging_utils import log_info
from .persistence import StateStore
from .rate_limits import RateLimitLookup, default_rate_limit_lookup, wait_seconds
from .schemas import (
    ErrorKind,
    Experiment,
    ExperimentRequest,
    FinalizeOutcome,
    Position,
    ProgressReport,
    WorkflowError,
)
from .state import StateManager

_TIMEOUT_ERRORS = frozenset({"Lambda.Timeout", "States.Timeout", "Sandbox.Timedout"})
_TASK_FAILURE_ERRORS = frozenset({"States.TaskFailed"})


def classify_error(error: Optional[str], cause: Optional[str] = None) -> WorkflowError:
    """Map a workflow engine error name (e.g. "States.Timeout") to an ErrorKind."""
    raw = (error or "").strip()
    if raw in _TIMEOUT_ERRORS or raw.endswith(".Timeout") or raw.endswith("TimeoutError"):
        kind = ErrorKind.TIMEOUT
    elif raw in _TASK_FAILURE_ERRORS or raw.startswith("Lambda."):
        kind = ErrorKind.TASK_FAILURE
    else:
        kind = ErrorKind.UNKNOWN

    return WorkflowError(
        kind=kind,
        cause=cause or raw or "Unknown error",
        raw_error=raw or None,
    )


def outcome_from_event(event: Mapping[str, Any]) -> FinalizeOutcome:
    """Build a FinalizeOutcome from the engine's finalize payload.

    Recognized keys: ``success`` (False marks an explicit failure),
    ``failureReason``, and ``error`` as ``{"Error": ..., "Cause": ...}`` from a
    catch block. A payload carrying an ``error`` is a failure even without
    ``success``.
    """
    error_info: Dict[str, Any] = event.get("error") or {}
    failed = event.get("success") is False or bool(error_info)
    if not failed:
        return FinalizeOutcome.success()

    cause = error_info.get("Cause") or event.get("failureReason")
    return FinalizeOutcome.failure(classify_error(error_info.get("Error"), cause))


async def start_experiment(store: StateStore, request: ExperimentRequest) -> Experiment:
    """Create a RUNNING experiment.

    With ``resume_from_experiment_id`` the new run starts where the earlier one
    left off. The earlier run's position is read under its lock so a turn
    still in flight cannot be half-observed.

    Raises:
        MazeNotFoundError: Unknown maze id
        ExperimentNotFoundError: Unknown experiment to resume from
    """
    start = Position(x=request.start_x, y=request.start_y)
    if request.resume_from_experiment_id is not None:
        start = await StateManager(store).current_position(request.resume_from_experiment_id)
        log_info(
            f"Resuming from experiment {request.resume_from_experiment_id} at {start}"
        )

    async with store.connection() as conn:
        if await conn.get_maze(request.maze_id) is None:
            raise MazeNotFoundError(request.maze_id)
        experiment = await conn.create_experiment(request, start)

    log_info(
        f"Started experiment {experiment.id}: model={experiment.model_name}, "
        f"maze={experiment.maze_id}, start={start}"
    )
    return experiment


async def check_progress(
    manager: StateManager,
    experiment_id: int,
    *,
    turn_number: int = 1,
    input_tokens: int = 0,
    output_tokens: int = 0,
    max_moves: Optional[int] = None,
    max_duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
    rate_limits: Optional[RateLimitLookup] = None,
) -> ProgressReport:
    """Between-turn check: record usage, then decide whether to keep going.

    Every logged action counts toward ``max_moves`` (recalls consume agent turns
    too). The count is taken between turns, so a run can overshoot the budget
    by whatever the last turn logged.

    The report also carries the model's request budget and the wait, in whole
    seconds, the engine should sleep before the next agent call.
    """
    max_moves = Config.MAX_MOVES if max_moves is None else max_moves
    if max_duration_minutes is None:
        max_duration_minutes = Config.MAX_DURATION_MINUTES
    input_tokens = int(input_tokens or 0)
    output_tokens = int(output_tokens or 0)

    async with manager.store.connection() as conn:
        if await conn.get_experiment(experiment_id) is None:
            raise ExperimentNotFoundError(experiment_id)
        experiment = await conn.add_token_totals(experiment_id, input_tokens, output_tokens)
        total_actions = await conn.count_actions(experiment_id)

    await manager.record_turn_usage(experiment_id, turn_number, input_tokens, output_tokens)

    now = now or datetime.now(timezone.utc)
    if experiment.started_at is not None:
        elapsed_minutes = (now - experiment.started_at).total_seconds() / 60
    else:
        elapsed_minutes = 0.0

    stop_reason = None
    if experiment.goal_found:
        stop_reason = "goal_found"
    elif total_actions >= max_moves:
        stop_reason = "max_moves_reached"
    elif elapsed_minutes >= max_duration_minutes:
        stop_reason = "max_duration_exceeded"

    position = await manager.current_position(experiment_id)

    rate_limits = rate_limits or default_rate_limit_lookup()
    rate_limit_rpm = await rate_limits.rpm(experiment.model_name)
    wait = wait_seconds(rate_limit_rpm)

    log_info(
        f"Experiment {experiment_id}: {total_actions}/{max_moves} moves, "
        f"{elapsed_minutes:.1f}/{max_duration_minutes} minutes, "
        f"goal_found: {experiment.goal_found}, position {position}"
    )
    if stop_reason:
        log_info(f"Experiment {experiment_id} stopping: {stop_reason}")
    else:
        log_info(f"Rate limit: {rate_limit_rpm} req/min, wait duration: {wait}s")

    return ProgressReport(
        experiment_id=experiment_id,
        total_actions=total_actions,
        max_moves=max_moves,
        elapsed_minutes=round(elapsed_minutes, 1),
        max_duration_minutes=max_duration_minutes,
        goal_found=experiment.goal_found,
        should_continue=stop_reason is None,
        stop_reason=stop_reason,
        cumulative_input_tokens=experiment.total_input_tokens,
        cumulative_output_tokens=experiment.total_output_tokens,
        turn_number=turn_number + 1,
        current_position=position,
        rate_limit_rpm=rate_limit_rpm,
        wait_seconds=wait,
    )

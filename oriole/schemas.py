"""
Pydantic schemas for the Oriole maze experiment state core.

All records exchanged with the datastore and the workflow engine are defined here.

Design Philosophy:
- The action log is the single source of truth; position and memory are views
- Tile maps keep the stored "x,y" string keys so JSON round-trips unchanged
- Action shape rules live next to the record they constrain
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import MalformedActionError


# ============================================================================
# Grid Schemas
# ============================================================================


class TileKind(IntEnum):
    """Tile encoding shared by maze grids and tiles_seen payloads."""

    EMPTY = 0
    WALL = 1
    GOAL = 2


# Coordinate string ("x,y") -> tile observed there
TileMap = Dict[str, TileKind]


def coordinate_key(x: int, y: int) -> str:
    """Return the tile map key for a coordinate pair."""
    return f"{x},{y}"


class Position(BaseModel):
    """Agent coordinates. x is the column, y the row (grid[y][x])."""

    model_config = ConfigDict(frozen=True)

    x: int
    y: int

    @property
    def key(self) -> str:
        return coordinate_key(self.x, self.y)

    def __str__(self) -> str:
        return f"({self.x}, {self.y})"


class Maze(BaseModel):
    """Static maze definition. Read-only to the state core."""

    id: Optional[int] = None
    name: str = ""
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    # grid_data[y][x]; rows are y, columns are x
    grid_data: List[List[TileKind]]
    see_through_walls: bool = False

    @model_validator(mode="after")
    def _check_dimensions(self) -> "Maze":
        if len(self.grid_data) != self.height:
            raise ValueError(
                f"grid_data has {len(self.grid_data)} rows but height is {self.height}"
            )
        for row_index, row in enumerate(self.grid_data):
            if len(row) != self.width:
                raise ValueError(
                    f"grid_data row {row_index} has {len(row)} columns but width is {self.width}"
                )
        return self

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def tile_at(self, x: int, y: int) -> TileKind:
        if not self.in_bounds(x, y):
            raise IndexError(f"({x}, {y}) is outside the {self.width}x{self.height} maze")
        return self.grid_data[y][x]


# ============================================================================
# Action Log Schemas
# ============================================================================


class ActionKind(str, Enum):
    """Known action types. The log column is free text so new kinds can be added."""

    MOVE_NORTH = "move_north"
    MOVE_SOUTH = "move_south"
    MOVE_EAST = "move_east"
    MOVE_WEST = "move_west"
    RECALL_ALL = "recall_all"
    RECALL_MOVEMENT_HISTORY = "recall_movement_history"
    NO_TOOL_CALL = "no_tool_call"


MOVEMENT_ACTIONS = frozenset(
    {
        ActionKind.MOVE_NORTH.value,
        ActionKind.MOVE_SOUTH.value,
        ActionKind.MOVE_EAST.value,
        ActionKind.MOVE_WEST.value,
    }
)


def is_movement_action(action_type: str) -> bool:
    """True for actions that carry a destination."""
    return str(getattr(action_type, "value", action_type)) in MOVEMENT_ACTIONS


class ActionRequest(BaseModel):
    """A new log entry before the appender assigns its step number."""

    action_type: str
    turn_number: Optional[int] = None
    reasoning: str = ""
    from_x: int
    from_y: int
    # Destination is present only for movement actions
    to_x: Optional[int] = None
    to_y: Optional[int] = None
    success: bool = True
    tiles_seen: TileMap = Field(default_factory=dict)
    # Token usage is usually patched in after the turn completes
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    assistant_message: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_action_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("action_type"), ActionKind):
            data = {**data, "action_type": data["action_type"].value}
        return data

    @property
    def source(self) -> Position:
        return Position(x=self.from_x, y=self.from_y)

    @property
    def destination(self) -> Optional[Position]:
        """Destination pair, or None unless both coordinates are present."""
        if self.to_x is None or self.to_y is None:
            return None
        return Position(x=self.to_x, y=self.to_y)

    def check_shape(self) -> None:
        """Reject records whose destination does not match their action type.

        Raises:
            MalformedActionError: half-present destination, movement without a
                destination, or a non-movement action with one
        """
        has_x = self.to_x is not None
        has_y = self.to_y is not None
        if has_x != has_y:
            raise MalformedActionError(
                action_type=self.action_type,
                reason="to_x and to_y must both be set or both be null",
            )
        if is_movement_action(self.action_type) and not has_x:
            raise MalformedActionError(
                action_type=self.action_type,
                reason="movement actions require a destination",
            )
        if not is_movement_action(self.action_type) and has_x:
            raise MalformedActionError(
                action_type=self.action_type,
                reason="non-movement actions must not carry a destination",
            )


class ActionLogEntry(ActionRequest):
    """Immutable row of the agent_actions log."""

    id: Optional[int] = None
    experiment_id: int
    step_number: int = Field(..., ge=1)
    created_at: Optional[datetime] = None


# ============================================================================
# Experiment Schemas
# ============================================================================


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class ErrorKind(str, Enum):
    """Closed classification of workflow-level failures."""

    TIMEOUT = "TIMEOUT"
    TASK_FAILURE = "TASK_FAILURE"
    UNKNOWN = "UNKNOWN"


class WorkflowError(BaseModel):
    """Failure reported by the workflow engine, already classified."""

    kind: ErrorKind
    cause: str = "Unknown error"
    # Original error name from the workflow engine (e.g. "Lambda.Timeout")
    raw_error: Optional[str] = None


class LastError(BaseModel):
    """Structured error stored in experiments.last_error."""

    kind: ErrorKind
    cause: str
    timestamp: datetime
    raw_error: Optional[str] = None


class Experiment(BaseModel):
    """One experiment run. Mutated by the finalizer exactly once."""

    model_config = ConfigDict(protected_namespaces=())

    id: int
    model_name: str = ""
    agent_id: Optional[str] = None
    prompt_version: Optional[str] = None
    maze_id: Optional[int] = None
    goal_description: Optional[str] = None
    start_x: int
    start_y: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    goal_found: bool = False
    execution_status: ExecutionStatus = ExecutionStatus.RUNNING
    last_error: Optional[LastError] = None
    failure_reason: Optional[str] = None
    # Stored in the experiments.model_config column
    llm_config: Optional[Dict[str, Any]] = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    @property
    def start_position(self) -> Position:
        return Position(x=self.start_x, y=self.start_y)

    @property
    def is_finalized(self) -> bool:
        return self.completed_at is not None


class ExperimentRequest(BaseModel):
    """Parameters for creating an experiment record."""

    model_config = ConfigDict(protected_namespaces=())

    model_name: str
    maze_id: int
    agent_id: Optional[str] = None
    prompt_version: str = "v1"
    goal_description: str = "Find the goal marker"
    start_x: int = 2
    start_y: int = 2
    llm_config: Optional[Dict[str, Any]] = None
    resume_from_experiment_id: Optional[int] = None


class StateSnapshot(BaseModel):
    """Derived state of one experiment after replaying a log prefix."""

    position: Position
    tiles: TileMap = Field(default_factory=dict)
    last_step: int = 0
    last_turn: Optional[int] = None
    action_count: int = 0
    goal_visible: bool = False


# ============================================================================
# Results returned to the workflow engine
# ============================================================================


class FinalizeOutcome(BaseModel):
    """What the workflow engine reports when it stops an experiment."""

    explicit_failure: bool = False
    error: Optional[WorkflowError] = None

    @classmethod
    def success(cls) -> "FinalizeOutcome":
        return cls(explicit_failure=False)

    @classmethod
    def failure(cls, error: WorkflowError) -> "FinalizeOutcome":
        return cls(explicit_failure=True, error=error)


class FinalizeResult(BaseModel):
    experiment_id: int
    execution_status: ExecutionStatus
    goal_found: bool
    completed_at: datetime
    last_error: Optional[LastError] = None


class MoveResult(BaseModel):
    success: bool
    step_number: int
    position: Position
    visible: TileMap
    found_goal: bool
    # Text rendering of visible, as shown to the agent
    visible_description: str = ""
    message: str


class RecallResult(BaseModel):
    step_number: int
    current_position: Position
    tiles: TileMap
    actions_recalled: int
    requested_depth: Optional[int] = None
    depth_capped: bool = False
    message: str


class ProgressReport(BaseModel):
    experiment_id: int
    total_actions: int
    max_moves: int
    elapsed_minutes: float
    max_duration_minutes: int
    goal_found: bool
    should_continue: bool
    stop_reason: Optional[str] = None
    cumulative_input_tokens: int = 0
    cumulative_output_tokens: int = 0
    # Turn number the next agent invocation should use
    turn_number: int
    current_position: Position
    # Pacing for the engine's wait before the next agent call
    rate_limit_rpm: int
    wait_seconds: int

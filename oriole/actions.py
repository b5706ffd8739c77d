"""Action handlers executed inside a locked turn.

Each handler reads the reconstructed state, decides the outcome of the tool
call, and appends exactly one log entry. The router (dispatch) opens the turn
scope, so every handler runs with the experiment lock held.

Grid tile encoding: 0 = EMPTY (passable), 1 = WALL (blocks movement and vision),
2 = GOAL (passable).
"""

from __future__ import annotations

import re
from typing import Dict, Optional, Tuple, Union

from . import replay
from .config import Config
from .errors import UnknownActionError
from .logging_utils import log_info, log_success
from .schemas import MoveResult, Position, RecallResult, TileKind
from .state import StateManager, TurnSession
from .vision import calculate_vision, describe_vision

DIRECTIONS: Dict[str, Tuple[int, int]] = {
    "north": (0, -1),
    "south": (0, 1),
    "east": (1, 0),
    "west": (-1, 0),
}

_RECALL_LAST = re.compile(r"^recall_last_(\d+)$")


async def move(
    session: TurnSession,
    direction: str,
    *,
    reasoning: str = "",
    turn_number: Optional[int] = None,
    vision_range: Optional[int] = None,
    assistant_message: Optional[str] = None,
) -> MoveResult:
    """Move one tile. Walls and the maze edge leave the agent in place (success=False).

    Blocked moves are still logged, with the destination equal to the source, so
    the agent gets feedback about the boundary and the step count still advances.
    """
    if direction not in DIRECTIONS:
        raise UnknownActionError(f"move_{direction}")

    current = await session.current_position()
    maze = await session.get_maze()

    dx, dy = DIRECTIONS[direction]
    target_x, target_y = current.x + dx, current.y + dy

    blocked_by: Optional[str] = None
    if not maze.in_bounds(target_x, target_y):
        blocked_by = "boundary"
    elif maze.tile_at(target_x, target_y) == TileKind.WALL:
        blocked_by = "wall"

    actual = current if blocked_by else Position(x=target_x, y=target_y)
    visible = calculate_vision(maze, actual.x, actual.y, vision_range)

    step_number = await session.append(
        turn_number=turn_number,
        action_type=f"move_{direction}",
        reasoning=reasoning,
        from_position=current,
        to_position=actual,
        success=blocked_by is None,
        tiles_seen=visible,
        assistant_message=assistant_message,
    )

    found_goal = replay.goal_visible(visible)
    if found_goal:
        await session.mark_goal_found()
        log_success(
            f"GOAL FOUND! Experiment {session.experiment_id} will stop after this turn."
        )

    if blocked_by:
        message = f"Cannot move {direction} - {blocked_by} in the way. Still at {actual}"
    else:
        message = f"Moved {direction} to {actual}"

    return MoveResult(
        success=blocked_by is None,
        step_number=step_number,
        position=actual,
        visible=visible,
        found_goal=found_goal,
        visible_description=describe_vision(visible),
        message=message,
    )


async def recall_all(
    session: TurnSession,
    *,
    reasoning: str = "",
    turn_number: Optional[int] = None,
    assistant_message: Optional[str] = None,
) -> RecallResult:
    """Return every tile seen so far and log the recall (no movement)."""
    tiles = await session.seen_tiles()
    position = await session.current_position()

    step_number = await session.append(
        turn_number=turn_number,
        action_type="recall_all",
        reasoning=reasoning,
        from_position=position,
        to_position=None,
        success=True,
        tiles_seen=tiles,
        assistant_message=assistant_message,
    )

    return RecallResult(
        step_number=step_number,
        current_position=position,
        tiles=tiles,
        actions_recalled=step_number - 1,
        message=f"You have seen {len(tiles)} tiles so far. Current position: {position}",
    )


async def recall_recent(
    session: TurnSession,
    depth: int,
    *,
    reasoning: str = "",
    turn_number: Optional[int] = None,
    max_depth: Optional[int] = None,
    assistant_message: Optional[str] = None,
) -> RecallResult:
    """Recall tiles from the last ``depth`` exploration actions.

    Depth is capped at ``max_depth`` (Config.MAX_RECALL_DEPTH) to keep the
    recalled memory inside the agent's context budget. Recall entries and empty
    turns are skipped when counting the window. The log entry carries an empty
    tiles_seen because the result is a summary, not a new observation.
    """
    if depth < 1:
        raise ValueError(f"recall depth must be >= 1, got {depth}")
    max_depth = Config.MAX_RECALL_DEPTH if max_depth is None else max_depth
    capped_depth = min(depth, max_depth)

    history = await session.exploration_history(capped_depth)
    tiles = replay.merge_tiles(history)
    position = await session.current_position()

    step_number = await session.append(
        turn_number=turn_number,
        action_type="recall_movement_history",
        reasoning=reasoning,
        from_position=position,
        to_position=None,
        success=True,
        tiles_seen={},
        assistant_message=assistant_message,
    )

    message = (
        f"Recalled last {capped_depth} actions ({len(history)} found). "
        f"Discovered {len(tiles)} unique tiles."
    )
    if capped_depth < depth:
        message += (
            f" NOTE: You requested depth={depth}, but the maximum recall depth is {max_depth}."
        )

    return RecallResult(
        step_number=step_number,
        current_position=position,
        tiles=tiles,
        actions_recalled=len(history),
        requested_depth=depth,
        depth_capped=capped_depth < depth,
        message=message,
    )


def parse_action(action_name: str) -> Tuple[str, Optional[int]]:
    """Split a tool name into (handler, argument).

    "move_east" -> ("move_east", None), "recall_all" -> ("recall_all", None), "recall_last_50" -> ("recall_last", 50).

    Raises:
        UnknownActionError: For anything else, including recall_last_0
    """
    name = action_name.strip().lstrip("/")
    if name.startswith("move_") and name[len("move_"):] in DIRECTIONS:
        return name, None
    if name == "recall_all":
        return name, None
    match = _RECALL_LAST.match(name)
    if match and int(match.group(1)) >= 1:
        return "recall_last", int(match.group(1))
    raise UnknownActionError(action_name)


async def dispatch(
    manager: StateManager,
    experiment_id: int,
    action_name: str,
    *,
    reasoning: str = "",
    turn_number: Optional[int] = None,
    assistant_message: Optional[str] = None,
) -> Union[MoveResult, RecallResult]:
    """Route one tool call to its handler inside the experiment's locked turn scope."""
    handler, argument = parse_action(action_name)
    log_info(f"Experiment {experiment_id}: {action_name} (turn {turn_number})")

    async with manager.turn(experiment_id) as session:
        if handler.startswith("move_"):
            return await move(
                session,
                handler[len("move_"):],
                reasoning=reasoning,
                turn_number=turn_number,
                assistant_message=assistant_message,
            )
        if handler == "recall_all":
            return await recall_all(
                session,
                reasoning=reasoning,
                turn_number=turn_number,
                assistant_message=assistant_message,
            )
        return await recall_recent(
            session,
            argument,
            reasoning=reasoning,
            turn_number=turn_number,
            assistant_message=assistant_message,
        )

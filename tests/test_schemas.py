"""Unit tests for the core schema building blocks."""

import pytest
from pydantic import ValidationError

from oriole.errors import MalformedActionError
from oriole.schemas import (
    ActionKind,
    ActionRequest,
    Experiment,
    Maze,
    Position,
    TileKind,
    is_movement_action,
)


def test_maze_dimensions_are_checked():
    maze = Maze(width=2, height=1, grid_data=[[0, 2]])
    assert maze.tile_at(1, 0) == TileKind.GOAL
    assert not maze.in_bounds(2, 0)
    with pytest.raises(IndexError):
        maze.tile_at(0, 1)

    with pytest.raises(ValidationError):
        Maze(width=3, height=1, grid_data=[[0, 0]])
    with pytest.raises(ValidationError):
        Maze(width=1, height=1, grid_data=[[7]])


def test_action_request_accepts_enum_action_type():
    request = ActionRequest(action_type=ActionKind.MOVE_WEST, from_x=1, from_y=0, to_x=0, to_y=0)
    assert request.action_type == "move_west"
    assert request.destination == Position(x=0, y=0)
    request.check_shape()


def test_check_shape_rejects_half_destination():
    request = ActionRequest(action_type="move_east", from_x=0, from_y=0, to_x=1)
    assert request.destination is None
    with pytest.raises(MalformedActionError) as excinfo:
        request.check_shape()
    assert excinfo.value.action_type == "move_east"


def test_unknown_non_movement_type_is_allowed():
    request = ActionRequest(action_type="no_tool_call", from_x=0, from_y=0)
    request.check_shape()
    assert not is_movement_action(request.action_type)
    assert is_movement_action(ActionKind.MOVE_NORTH)


def test_experiment_maps_model_config_column():
    experiment = Experiment(id=1, start_x=2, start_y=3, llm_config={"temperature": 0.2})
    assert experiment.start_position == Position(x=2, y=3)
    assert experiment.llm_config == {"temperature": 0.2}
    assert not experiment.is_finalized


def test_position_is_hashable_and_printable():
    assert {Position(x=1, y=2), Position(x=1, y=2)} == {Position(x=1, y=2)}
    assert str(Position(x=1, y=2)) == "(1, 2)"
    assert Position(x=1, y=2).key == "1,2"

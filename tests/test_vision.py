"""Tests for line-of-sight and see-through-walls perception."""

from oriole.schemas import Maze, TileKind
from oriole.vision import calculate_vision, describe_vision, parse_coordinate


def make_maze(see_through_walls=False) -> Maze:
    return Maze(
        width=5,
        height=5,
        see_through_walls=see_through_walls,
        grid_data=[
            [0, 0, 0, 1, 0],
            [0, 1, 0, 1, 0],
            [0, 1, 0, 0, 0],
            [0, 0, 0, 1, 0],
            [1, 1, 0, 0, 2],
        ],
    )


def test_rays_stop_at_first_wall_and_edge():
    visible = calculate_vision(make_maze(), 0, 0, vision_range=3)

    assert visible == {
        "0,0": TileKind.EMPTY,
        "1,0": TileKind.EMPTY,
        "2,0": TileKind.EMPTY,
        "3,0": TileKind.WALL,
        "0,1": TileKind.EMPTY,
        "0,2": TileKind.EMPTY,
        "0,3": TileKind.EMPTY,
    }


def test_wall_hides_tiles_behind_it():
    visible = calculate_vision(make_maze(), 2, 3, vision_range=3)
    assert visible["3,3"] == TileKind.WALL
    assert "4,3" not in visible


def test_goal_is_seen_along_open_ray():
    visible = calculate_vision(make_maze(), 2, 4, vision_range=3)
    assert visible["4,4"] == TileKind.GOAL


def test_see_through_walls_returns_square():
    visible = calculate_vision(make_maze(see_through_walls=True), 2, 2, vision_range=1)
    assert len(visible) == 9
    assert visible["1,1"] == TileKind.WALL

    corner = calculate_vision(make_maze(), 0, 0, vision_range=1, see_through_walls=True)
    assert set(corner) == {"0,0", "1,0", "0,1", "1,1"}


def test_zero_range_sees_own_tile_only():
    assert calculate_vision(make_maze(), 4, 4, vision_range=0) == {"4,4": TileKind.GOAL}


def test_describe_vision_and_parse_coordinate():
    assert parse_coordinate("3,4") == (3, 4)
    text = describe_vision({"2,1": TileKind.EMPTY, "2,0": TileKind.WALL, "4,4": TileKind.GOAL})
    assert text == "(2,1): empty, (2,0): wall, (4,4): GOAL"

"""Agent perception on the maze grid.

Two modes:
1. Line-of-sight (default): rays in the four cardinal directions, stopped by the
   maze edge or by the first wall (the wall itself is seen)
2. See-through-walls: every tile in the square of radius ``vision_range``

The agent always sees the tile it stands on.
"""

from __future__ import annotations

from typing import Optional, Tuple

from .config import Config
from .schemas import Maze, TileKind, TileMap, coordinate_key

_RAYS = ((0, -1), (0, 1), (1, 0), (-1, 0))  # north, south, east, west

_TILE_NAMES = {
    TileKind.EMPTY: "empty",
    TileKind.WALL: "wall",
    TileKind.GOAL: "GOAL",
}


def parse_coordinate(key: str) -> Tuple[int, int]:
    """Inverse of coordinate_key: "3,4" -> (3, 4)."""
    x, y = key.split(",")
    return int(x), int(y)


def calculate_vision(
    maze: Maze,
    x: int,
    y: int,
    vision_range: Optional[int] = None,
    see_through_walls: Optional[bool] = None,
) -> TileMap:
    """Return ``{"x,y": TileKind}`` for every tile visible from (x, y)."""
    vision_range = Config.VISION_RANGE if vision_range is None else max(int(vision_range), 0)
    if see_through_walls is None:
        see_through_walls = maze.see_through_walls

    visible: TileMap = {coordinate_key(x, y): maze.tile_at(x, y)}

    if see_through_walls:
        for dy in range(-vision_range, vision_range + 1):
            for dx in range(-vision_range, vision_range + 1):
                nx, ny = x + dx, y + dy
                if maze.in_bounds(nx, ny):
                    visible[coordinate_key(nx, ny)] = maze.tile_at(nx, ny)
        return visible

    for dx, dy in _RAYS:
        for distance in range(1, vision_range + 1):
            nx, ny = x + dx * distance, y + dy * distance
            if not maze.in_bounds(nx, ny):
                break
            tile = maze.tile_at(nx, ny)
            visible[coordinate_key(nx, ny)] = tile
            if tile == TileKind.WALL:
                break

    return visible


def describe_vision(tiles: TileMap) -> str:
    """Human-readable listing, e.g. "(2,1): empty, (2,0): wall"."""
    parts = []
    for key, kind in tiles.items():
        tx, ty = parse_coordinate(key)
        parts.append(f"({tx},{ty}): {_TILE_NAMES.get(TileKind(kind), 'unknown')}")
    return ", ".join(parts)

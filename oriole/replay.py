"""Pure log replay.

Every derived view of an experiment (position, spatial memory, counters) is a
function of an ordered prefix of its action log. The functions here take plain
sequences of entries, never touch the datastore, and never raise for a
well-formed log, so they can be exercised with in-memory lists.

Entries are expected in ascending step order unless a function says otherwise.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from .schemas import (
    ActionLogEntry,
    ActionRequest,
    Position,
    StateSnapshot,
    TileKind,
    TileMap,
)


def position_after(entry: ActionRequest) -> Position:
    """Where the agent stands after ``entry``.

    The whole pair comes from one source: the destination when both of its
    coordinates are present, otherwise the source. Mixing a destination x with
    a source y would place the agent somewhere it never was.
    """
    destination = entry.destination
    if destination is not None:
        return destination
    return entry.source


def reconstruct_position(entries: Sequence[ActionRequest], start: Position) -> Position:
    """Position after the last entry, or ``start`` for an empty log."""
    if not entries:
        return start
    return position_after(entries[-1])


def merge_tiles(entries: Iterable[ActionRequest]) -> TileMap:
    """Fold tiles_seen maps in order; a later observation replaces an earlier one."""
    merged: TileMap = {}
    for entry in entries:
        if entry.tiles_seen:
            merged.update(entry.tiles_seen)
    return merged


def recent_window(entries_desc: Sequence[ActionRequest], limit: Optional[int] = None) -> List[ActionRequest]:
    """Turn a newest-first fetch into a chronological window of at most ``limit`` entries."""
    window = list(entries_desc if limit is None else entries_desc[:limit])
    window.reverse()
    return window


def goal_visible(tiles: Optional[TileMap]) -> bool:
    if not tiles:
        return False
    return any(TileKind(value) == TileKind.GOAL for value in tiles.values())


def next_step_number(last_step: Optional[int]) -> int:
    """Step numbers start at 1 and never skip."""
    return (last_step or 0) + 1


def snapshot(entries: Sequence[ActionLogEntry], start: Position) -> StateSnapshot:
    """Full derived state after replaying ``entries`` from ``start``."""
    if not entries:
        return StateSnapshot(position=start)

    last = entries[-1]
    return StateSnapshot(
        position=reconstruct_position(entries, start),
        tiles=merge_tiles(entries),
        last_step=last.step_number,
        last_turn=last.turn_number,
        action_count=len(entries),
        goal_visible=goal_visible(last.tiles_seen),
    )


def check_position_continuity(entries: Sequence[ActionLogEntry], start: Position) -> List[int]:
    """Return step numbers whose source differs from the previous derived position.

    An empty result means no entry "teleported": each action started where the
    previous one left the agent (or at ``start`` for the first entry).
    """
    broken: List[int] = []
    expected = start
    for entry in entries:
        if entry.source != expected:
            broken.append(entry.step_number)
        expected = position_after(entry)
    return broken


def check_step_sequence(entries: Sequence[ActionLogEntry]) -> List[int]:
    """Return step numbers that break the 1, 2, 3, ... sequence."""
    broken: List[int] = []
    for expected, entry in enumerate(entries, start=1):
        if entry.step_number != expected:
            broken.append(entry.step_number)
    return broken

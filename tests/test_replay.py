"""Unit tests for pure action-log replay."""

from oriole import replay
from oriole.schemas import ActionLogEntry, Position, TileKind


START = Position(x=0, y=0)


def entry(step, action_type, source, destination=None, tiles=None, turn=1):
    return ActionLogEntry(
        experiment_id=1,
        step_number=step,
        turn_number=turn,
        action_type=action_type,
        from_x=source[0],
        from_y=source[1],
        to_x=destination[0] if destination else None,
        to_y=destination[1] if destination else None,
        tiles_seen=tiles or {},
    )


def test_empty_log_reconstructs_start_position():
    assert replay.reconstruct_position([], START) == START
    assert replay.merge_tiles([]) == {}
    assert replay.next_step_number(0) == 1
    assert replay.next_step_number(None) == 1


def test_non_movement_entry_keeps_source_position():
    log = [
        entry(1, "move_east", (0, 0), (1, 0)),
        entry(2, "recall_all", (1, 0)),
    ]
    assert replay.reconstruct_position(log, START) == Position(x=1, y=0)


def test_half_present_destination_falls_back_to_whole_source_pair():
    partial = ActionLogEntry(
        experiment_id=1,
        step_number=1,
        action_type="move_east",
        from_x=3,
        from_y=4,
        to_x=9,
        to_y=None,
    )
    assert replay.position_after(partial) == Position(x=3, y=4)


def test_merge_latest_observation_wins():
    log = [
        entry(1, "move_east", (0, 0), (1, 0), {"1,0": TileKind.EMPTY, "2,0": TileKind.EMPTY}),
        entry(2, "recall_all", (1, 0), tiles={"2,0": TileKind.WALL}),
    ]
    merged = replay.merge_tiles(log)
    assert merged == {"1,0": TileKind.EMPTY, "2,0": TileKind.WALL}


def test_merge_is_idempotent_and_monotone():
    log = [
        entry(1, "move_east", (0, 0), (1, 0), {"1,0": 0}),
        entry(2, "move_east", (1, 0), (2, 0), {"2,0": 0, "3,0": 1}),
    ]
    once = replay.merge_tiles(log)
    assert replay.merge_tiles(log + log[-1:]) == once
    assert set(replay.merge_tiles(log[:1])) <= set(once)


def test_recent_window_is_chronological():
    newest_first = [entry(3, "move_east", (2, 0), (3, 0)), entry(2, "move_east", (1, 0), (2, 0))]
    window = replay.recent_window(newest_first)
    assert [e.step_number for e in window] == [2, 3]
    assert [e.step_number for e in replay.recent_window(newest_first, 1)] == [3]


def test_goal_visible_detects_goal_tile():
    assert replay.goal_visible({"4,4": 2, "3,4": 0})
    assert not replay.goal_visible({"3,4": 0, "3,3": 1})
    assert not replay.goal_visible(None)


def test_snapshot_summarizes_log():
    log = [
        entry(1, "move_south", (0, 0), (0, 1), {"0,1": 0}, turn=1),
        entry(2, "move_south", (0, 1), (0, 2), {"0,2": 0, "0,3": 2}, turn=2),
    ]
    state = replay.snapshot(log, START)
    assert state.position == Position(x=0, y=2)
    assert state.last_step == 2
    assert state.last_turn == 2
    assert state.action_count == 2
    assert state.goal_visible is True
    assert replay.snapshot([], START).position == START


def test_continuity_check_reports_teleports():
    good = [
        entry(1, "move_east", (0, 0), (1, 0)),
        entry(2, "recall_all", (1, 0)),
        entry(3, "move_south", (1, 0), (1, 1)),
    ]
    assert replay.check_position_continuity(good, START) == []

    bad = good[:2] + [entry(3, "move_south", (0, 0), (0, 1))]
    assert replay.check_position_continuity(bad, START) == [3]


def test_step_sequence_check_reports_gaps():
    log = [entry(1, "move_east", (0, 0), (1, 0)), entry(3, "move_east", (1, 0), (2, 0))]
    assert replay.check_step_sequence(log) == [3]

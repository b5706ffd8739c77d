"""Tests for move/recall handlers and the action router."""

import pytest

from oriole.actions import dispatch, parse_action, recall_recent
from oriole.errors import UnknownActionError
from oriole.persistence import InMemoryStateStore
from oriole.schemas import ExperimentRequest, Maze, MoveResult, Position, RecallResult, TileKind
from oriole.state import StateManager


GRID = [
    [0, 0, 0, 1, 0],
    [0, 1, 0, 1, 0],
    [0, 1, 0, 0, 0],
    [0, 0, 0, 1, 0],
    [1, 1, 0, 0, 2],
]


async def seed(store: InMemoryStateStore) -> int:
    async with store.connection() as conn:
        maze = await conn.save_maze(Maze(name="actions", width=5, height=5, grid_data=GRID))
        experiment = await conn.create_experiment(
            ExperimentRequest(model_name="test-model", maze_id=maze.id), Position(x=0, y=0)
        )
    return experiment.id


def test_parse_action_names():
    assert parse_action("move_north") == ("move_north", None)
    assert parse_action("/recall_all") == ("recall_all", None)
    assert parse_action("recall_last_25") == ("recall_last", 25)
    with pytest.raises(UnknownActionError):
        parse_action("teleport")
    with pytest.raises(UnknownActionError):
        parse_action("move_up")


@pytest.mark.asyncio
async def test_successful_move_logs_destination_and_vision():
    store = InMemoryStateStore()
    experiment_id = await seed(store)
    manager = StateManager(store)

    result = await dispatch(manager, experiment_id, "move_east", reasoning="open", turn_number=1)

    assert isinstance(result, MoveResult)
    assert result.success is True
    assert result.step_number == 1
    assert result.position == Position(x=1, y=0)
    assert result.visible["3,0"] == TileKind.WALL
    assert result.found_goal is False
    assert "(3,0): wall" in result.visible_description

    (logged,) = await manager.history(experiment_id)
    assert (logged.from_x, logged.from_y, logged.to_x, logged.to_y) == (0, 0, 1, 0)
    assert logged.tiles_seen == result.visible


@pytest.mark.asyncio
async def test_blocked_moves_stay_in_place():
    store = InMemoryStateStore()
    experiment_id = await seed(store)
    manager = StateManager(store)

    edge = await dispatch(manager, experiment_id, "move_north", turn_number=1)
    assert edge.success is False
    assert edge.position == Position(x=0, y=0)
    assert "boundary" in edge.message

    await dispatch(manager, experiment_id, "move_east", turn_number=1)
    wall = await dispatch(manager, experiment_id, "move_south", turn_number=2)
    assert wall.success is False
    assert wall.position == Position(x=1, y=0)
    assert "wall" in wall.message

    log = await manager.history(experiment_id)
    assert [e.step_number for e in log] == [1, 2, 3]
    # Blocked moves record the source as the destination
    assert (log[2].to_x, log[2].to_y) == (1, 0)
    assert await manager.current_position(experiment_id) == Position(x=1, y=0)


@pytest.mark.asyncio
async def test_reaching_goal_sets_flag():
    store = InMemoryStateStore()
    experiment_id = await seed(store)
    manager = StateManager(store)

    path = ["move_south"] * 3 + ["move_east"] * 2 + ["move_south"]
    results = [await dispatch(manager, experiment_id, name, turn_number=1) for name in path]

    assert all(r.success for r in results)
    assert results[-1].position == Position(x=2, y=4)
    assert results[-1].found_goal is True
    assert not any(r.found_goal for r in results[:-1])
    assert store.experiments[experiment_id].goal_found is True


@pytest.mark.asyncio
async def test_recall_all_keeps_position_and_merges_memory():
    store = InMemoryStateStore()
    experiment_id = await seed(store)
    manager = StateManager(store)

    move = await dispatch(manager, experiment_id, "move_east", turn_number=1)
    recall = await dispatch(manager, experiment_id, "recall_all", turn_number=1)

    assert isinstance(recall, RecallResult)
    assert recall.step_number == 2
    assert recall.current_position == Position(x=1, y=0)
    assert recall.tiles == move.visible

    log = await manager.history(experiment_id)
    assert log[1].action_type == "recall_all"
    assert log[1].destination is None
    assert await manager.current_position(experiment_id) == Position(x=1, y=0)


@pytest.mark.asyncio
async def test_recall_last_skips_recalls_and_caps_depth():
    store = InMemoryStateStore()
    experiment_id = await seed(store)
    manager = StateManager(store)

    await dispatch(manager, experiment_id, "move_south", turn_number=1)
    await dispatch(manager, experiment_id, "recall_all", turn_number=1)
    last = await dispatch(manager, experiment_id, "move_south", turn_number=2)

    recall = await dispatch(manager, experiment_id, "recall_last_1", turn_number=2)
    assert recall.actions_recalled == 1
    assert recall.tiles == last.visible
    assert recall.depth_capped is False

    async with manager.turn(experiment_id) as session:
        capped = await recall_recent(session, 50, turn_number=3, max_depth=2)
    assert capped.requested_depth == 50
    assert capped.depth_capped is True
    # Two exploration moves exist; recall entries are not counted
    assert capped.actions_recalled == 2

    log = await manager.history(experiment_id)
    assert log[-1].action_type == "recall_movement_history"
    assert log[-1].tiles_seen == {}


@pytest.mark.asyncio
async def test_unknown_action_does_not_touch_the_log():
    store = InMemoryStateStore()
    experiment_id = await seed(store)
    manager = StateManager(store)

    with pytest.raises(UnknownActionError):
        await dispatch(manager, experiment_id, "dig_down", turn_number=1)
    assert await manager.history(experiment_id) == []


@pytest.mark.asyncio
async def test_recall_last_zero_is_rejected_before_logging():
    with pytest.raises(UnknownActionError):
        parse_action("recall_last_0")
    with pytest.raises(UnknownActionError):
        parse_action("recall_last_00")

    store = InMemoryStateStore()
    experiment_id = await seed(store)
    manager = StateManager(store)

    with pytest.raises(UnknownActionError):
        await dispatch(manager, experiment_id, "recall_last_0", turn_number=1)
    assert await manager.history(experiment_id) == []

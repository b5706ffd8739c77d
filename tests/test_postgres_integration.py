"""Integration tests against a real PostgreSQL database.

Skipped by default unless ORIOLE_TEST_DATABASE_URL points at a scratch database.
"""

import asyncio
import os

import pytest

from oriole.actions import dispatch
from oriole.errors import ExperimentAlreadyFinalizedError, LockTimeoutError
from oriole.finalizer import finalize
from oriole.locking import ExperimentLock
from oriole.persistence import PostgresStateStore
from oriole.schemas import ExecutionStatus, ExperimentRequest, FinalizeOutcome, Maze, Position
from oriole.state import StateManager
from oriole.workflow import check_progress, classify_error, start_experiment


DATABASE_URL = os.getenv("ORIOLE_TEST_DATABASE_URL")

pytestmark = [
    pytest.mark.skipif(
        not DATABASE_URL,
        reason="Postgres integration tests skipped (missing ORIOLE_TEST_DATABASE_URL)",
    ),
    pytest.mark.postgres,
]


async def open_store() -> PostgresStateStore:
    store = PostgresStateStore(DATABASE_URL, max_size=4)
    await store.initialize()
    await store.ensure_schema()
    return store


async def new_experiment(store: PostgresStateStore) -> int:
    async with store.connection() as conn:
        maze = await conn.save_maze(
            Maze(name="pg-test", width=3, height=3, grid_data=[[0, 0, 0], [0, 1, 0], [0, 0, 2]])
        )
    experiment = await start_experiment(
        store, ExperimentRequest(model_name="pg", maze_id=maze.id, start_x=0, start_y=0)
    )
    return experiment.id


@pytest.mark.asyncio
async def test_turns_and_finalize_round_trip():
    store = await open_store()
    try:
        experiment_id = await new_experiment(store)
        manager = StateManager(store, lock_timeout=5)

        await dispatch(manager, experiment_id, "move_east", turn_number=1)
        await dispatch(manager, experiment_id, "recall_all", turn_number=1)
        report = await check_progress(manager, experiment_id, turn_number=1, input_tokens=10, output_tokens=5)
        assert report.current_position == Position(x=1, y=0)
        assert report.total_actions == 2

        history = await manager.history(experiment_id)
        assert [e.step_number for e in history] == [1, 2]
        assert all(e.input_tokens == 10 for e in history)

        error = classify_error("States.Timeout", "execution timed out")
        result = await finalize(store, experiment_id, FinalizeOutcome.failure(error))
        assert result.execution_status == ExecutionStatus.TIMED_OUT

        with pytest.raises(ExperimentAlreadyFinalizedError):
            await finalize(store, experiment_id, FinalizeOutcome.success())
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_concurrent_turns_serialize_on_advisory_lock():
    store = await open_store()
    try:
        experiment_id = await new_experiment(store)
        manager = StateManager(store, lock_timeout=10)

        await asyncio.gather(
            dispatch(manager, experiment_id, "move_south", turn_number=1),
            dispatch(manager, experiment_id, "move_south", turn_number=2),
        )
        assert await manager.current_position(experiment_id) == Position(x=0, y=2)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_lock_timeout_when_held_by_other_session():
    store = await open_store()
    try:
        experiment_id = await new_experiment(store)
        async with store.connection() as holder:
            async with ExperimentLock(holder, experiment_id, timeout=5):
                async with store.connection() as waiter:
                    with pytest.raises(LockTimeoutError):
                        await ExperimentLock(waiter, experiment_id, timeout=0.2).acquire()
    finally:
        await store.close()

"""
Stateless orchestration state manager.

No invocation keeps agent state in memory. Every turn rebuilds what it needs
from the agent_actions log while holding the experiment lock:

1. Open a scoped connection and take the experiment lock
2. Reconstruct the current position (and spatial memory if asked)
3. Append one or more actions with the next step numbers
4. Leave the scope: lock released, connection returned

Usage pattern:
    manager = StateManager(store)

    async with manager.turn(experiment_id) as session:
        position = await session.current_position()
        step = await session.append(
            turn_number=3,
            action_type="move_east",
            reasoning="corridor continues east",
            from_position=position,
            to_position=Position(x=position.x + 1, y=position.y),
            success=True,
            tiles_seen={"3,2": TileKind.EMPTY},
        )

The session refuses to work once its scope has ended, so a stale session
cannot read or append outside the lock.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from . import replay
from .errors import ExperimentNotFoundError, MalformedActionError, MazeNotFoundError
from .locking import ExperimentLock
from .logging_utils import log_db
from .persistence import StateStore, StoreConnection
from .schemas import (
    ActionLogEntry,
    ActionRequest,
    Experiment,
    Maze,
    Position,
    StateSnapshot,
    TileMap,
)


def _check_window(max_recent_actions: Optional[int]) -> None:
    if max_recent_actions is not None and max_recent_actions < 1:
        raise ValueError(f"max_recent_actions must be >= 1, got {max_recent_actions}")


class TurnSession:
    """Locked view of one experiment for the duration of a turn."""

    def __init__(self, conn: StoreConnection, lock: ExperimentLock, experiment: Experiment):
        self.conn = conn
        self.lock = lock
        self.experiment = experiment

    @property
    def experiment_id(self) -> int:
        return self.experiment.id

    async def current_position(self) -> Position:
        """Position after the latest logged step, or the start position."""
        self.lock.require("current_position")
        latest = await self.conn.latest_action(self.experiment_id)
        tail = [latest] if latest is not None else []
        return replay.reconstruct_position(tail, self.experiment.start_position)

    async def seen_tiles(self, max_recent_actions: Optional[int] = None) -> TileMap:
        """Merged tiles_seen of the last ``max_recent_actions`` entries (all if None)."""
        self.lock.require("seen_tiles")
        _check_window(max_recent_actions)
        rows = await self.conn.recent_actions(self.experiment_id, max_recent_actions)
        return replay.merge_tiles(replay.recent_window(rows))

    async def exploration_history(self, limit: int) -> List[ActionLogEntry]:
        """Last ``limit`` exploration entries (no recalls), oldest first."""
        self.lock.require("exploration_history")
        _check_window(limit)
        rows = await self.conn.recent_actions(self.experiment_id, limit, exploration_only=True)
        return replay.recent_window(rows)

    async def snapshot(self) -> StateSnapshot:
        """Replay the full log."""
        self.lock.require("snapshot")
        rows = await self.conn.recent_actions(self.experiment_id)
        return replay.snapshot(replay.recent_window(rows), self.experiment.start_position)

    async def get_maze(self) -> Maze:
        maze_id = self.experiment.maze_id
        maze = await self.conn.get_maze(maze_id) if maze_id is not None else None
        if maze is None:
            raise MazeNotFoundError(maze_id)
        return maze

    async def append(
        self,
        *,
        turn_number: Optional[int],
        action_type: str,
        reasoning: str,
        from_position: Position,
        to_position: Optional[Position],
        success: bool,
        tiles_seen: TileMap,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        assistant_message: Optional[str] = None,
    ) -> int:
        """Validate and log one action. Returns its step number.

        Raises:
            MalformedActionError: If the destination does not fit the action type,
                or the source is not the current position
            LockNotHeldError: If the turn scope has already ended
        """
        request = ActionRequest(
            action_type=action_type,
            turn_number=turn_number,
            reasoning=reasoning or "",
            from_x=from_position.x,
            from_y=from_position.y,
            to_x=to_position.x if to_position is not None else None,
            to_y=to_position.y if to_position is not None else None,
            success=success,
            tiles_seen=tiles_seen,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            assistant_message=assistant_message,
        )
        return await self.append_request(request)

    async def append_request(self, request: ActionRequest) -> int:
        self.lock.require("append")
        request.check_shape()

        # Every entry starts where the previous one left the agent
        current = await self.current_position()
        if request.source != current:
            raise MalformedActionError(
                action_type=request.action_type,
                reason=f"source {request.source} differs from current position {current}",
            )

        step_number = replay.next_step_number(await self.conn.max_step_number(self.experiment_id))
        entry = ActionLogEntry(
            **request.model_dump(),
            experiment_id=self.experiment_id,
            step_number=step_number,
        )
        await self.conn.insert_action(entry)
        log_db(
            f"Experiment {self.experiment_id}: logged step {step_number} "
            f"({request.action_type}, turn {request.turn_number})"
        )
        return step_number

    async def mark_goal_found(self) -> None:
        """Flag the experiment as having seen the goal so the progress check stops it."""
        self.lock.require("mark_goal_found")
        await self.conn.set_goal_found(self.experiment_id)
        self.experiment.goal_found = True


class StateManager:
    """Entry point for the workflow engine's per-turn state access.

    The store is injected; the manager keeps no per-experiment state of its own.
    """

    def __init__(self, store: StateStore, *, lock_timeout: Optional[float] = None):
        self.store = store
        self.lock_timeout = lock_timeout

    @asynccontextmanager
    async def turn(self, experiment_id: int) -> AsyncIterator[TurnSession]:
        """Exclusive read-decide-write scope for one experiment.

        Raises:
            DatastoreUnavailableError: If no connection could be opened
            LockTimeoutError: If another invocation held the lock too long
            ExperimentNotFoundError: If the experiment does not exist
        """
        async with self.store.connection() as conn:
            async with ExperimentLock(conn, experiment_id, timeout=self.lock_timeout) as lock:
                experiment = await conn.get_experiment(experiment_id)
                if experiment is None:
                    raise ExperimentNotFoundError(experiment_id)
                yield TurnSession(conn, lock, experiment)

    async def current_position(self, experiment_id: int) -> Position:
        """Locked one-shot position read."""
        async with self.turn(experiment_id) as session:
            return await session.current_position()

    async def seen_tiles(
        self, experiment_id: int, max_recent_actions: Optional[int] = None
    ) -> TileMap:
        """Lock-free memory read for reporting and replay; may trail a running turn."""
        _check_window(max_recent_actions)
        async with self.store.connection() as conn:
            rows = await conn.recent_actions(experiment_id, max_recent_actions)
        return replay.merge_tiles(replay.recent_window(rows))

    async def history(self, experiment_id: int) -> List[ActionLogEntry]:
        """Full committed log in step order, lock-free."""
        async with self.store.connection() as conn:
            rows = await conn.recent_actions(experiment_id)
        return replay.recent_window(rows)

    async def record_turn_usage(
        self, experiment_id: int, turn_number: int, input_tokens: int, output_tokens: int
    ) -> int:
        """Stamp a finished turn's token usage on all of its entries.

        Values overwrite whatever was there, so repeating the call is harmless.
        Returns the number of entries updated.
        """
        async with self.store.connection() as conn:
            updated = await conn.update_turn_tokens(
                experiment_id, turn_number, input_tokens, output_tokens
            )
        log_db(
            f"Experiment {experiment_id}: turn {turn_number} usage "
            f"{input_tokens} in / {output_tokens} out on {updated} entries"
        )
        return updated

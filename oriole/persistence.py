"""
StateStore interface for the experiment datastore.

This module provides the abstract StateStore/StoreConnection interface and two
concrete implementations. Every invocation of the state core works through one
scoped connection: the experiment lock lives on that connection's session, so
leaving the scope (or the process dying) releases the lock with it.

Two included implementations:
1. InMemoryStateStore - Dict-based storage with per-experiment asyncio locks (testing)
2. PostgresStateStore - asyncpg pool, session-level advisory locks (production)

Key responsibilities:
- Advisory lock primitive keyed by experiment id
- Experiment and maze records
- Append-only agent_actions log (latest entry, newest-first windows, max step)
- Per-turn token patching and the conditional terminal update

Usage pattern:
    store = PostgresStateStore()     # or InMemoryStateStore()
    await store.initialize()

    async with store.connection() as conn:
        await conn.advisory_lock(experiment_id, timeout=30)
        entry = await conn.latest_action(experiment_id)

    await store.close()
"""

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from .config import Config
from .credentials import CredentialCache, resolve_dsn
from .errors import DatastoreUnavailableError, LockTimeoutError
from .logging_utils import log_db
from .schemas import (
    ActionLogEntry,
    Experiment,
    ExperimentRequest,
    ExecutionStatus,
    LastError,
    Maze,
    Position,
)

# Errors that mean "could not reach the datastore at all"
_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
)


def _is_exploration_action(action_type: str) -> bool:
    """Recall bookkeeping and empty turns are not part of the exploration history."""
    return action_type != "no_tool_call" and not action_type.startswith("recall_")


class StoreConnection(ABC):
    """One invocation's handle on the datastore.

    Method categories:
    1. Locking: advisory_lock(), advisory_unlock()
    2. Records: create_experiment(), get_experiment(), save_maze(), get_maze()
    3. Log reads: latest_action(), recent_actions(), max_step_number(), count_actions()
    4. Log writes: insert_action(), update_turn_tokens()
    5. Experiment writes: set_goal_found(), add_token_totals(), finalize_experiment()
    """

    @abstractmethod
    async def advisory_lock(self, key: int, timeout: Optional[float] = None) -> None:
        """
        Block until the exclusive lock for ``key`` is held by this session.

        Args:
            key: Lock key (the experiment id)
            timeout: Seconds to wait; None or 0 waits forever

        Raises:
            LockTimeoutError: If the lock was not granted in time
        """
        pass

    @abstractmethod
    async def advisory_unlock(self, key: int) -> bool:
        """Release the lock for ``key``. Returns False if this session did not hold it."""
        pass

    @abstractmethod
    async def create_experiment(self, request: ExperimentRequest, start: Position) -> Experiment:
        pass

    @abstractmethod
    async def get_experiment(self, experiment_id: int) -> Optional[Experiment]:
        pass

    @abstractmethod
    async def save_maze(self, maze: Maze) -> Maze:
        """Insert a maze definition and return it with its id."""
        pass

    @abstractmethod
    async def get_maze(self, maze_id: int) -> Optional[Maze]:
        pass

    @abstractmethod
    async def latest_action(self, experiment_id: int) -> Optional[ActionLogEntry]:
        """Return the entry with the highest step number, or None."""
        pass

    @abstractmethod
    async def recent_actions(
        self,
        experiment_id: int,
        limit: Optional[int] = None,
        *,
        exploration_only: bool = False,
    ) -> List[ActionLogEntry]:
        """
        Return entries newest first, at most ``limit`` of them.

        Args:
            experiment_id: Experiment whose log is read
            limit: Maximum rows to read; None reads the whole log
            exploration_only: Skip recall_* and no_tool_call entries
        """
        pass

    @abstractmethod
    async def max_step_number(self, experiment_id: int) -> int:
        """Highest step number logged, 0 for an empty log."""
        pass

    @abstractmethod
    async def count_actions(self, experiment_id: int) -> int:
        pass

    @abstractmethod
    async def insert_action(self, entry: ActionLogEntry) -> None:
        """Insert a log row. Fails if the (experiment, step) pair already exists."""
        pass

    @abstractmethod
    async def update_turn_tokens(
        self, experiment_id: int, turn_number: int, input_tokens: int, output_tokens: int
    ) -> int:
        """Overwrite token fields for every entry of a turn. Returns rows updated."""
        pass

    @abstractmethod
    async def set_goal_found(self, experiment_id: int) -> None:
        pass

    @abstractmethod
    async def add_token_totals(
        self, experiment_id: int, input_tokens: int, output_tokens: int
    ) -> Experiment:
        """Add a turn's usage to the experiment's cumulative counters."""
        pass

    @abstractmethod
    async def finalize_experiment(
        self,
        experiment_id: int,
        *,
        execution_status: ExecutionStatus,
        goal_found: bool,
        completed_at: datetime,
        last_error: Optional[LastError],
        failure_reason: Optional[str],
    ) -> bool:
        """
        Write the terminal fields if the experiment is still running.

        Returns:
            True if the row was updated, False if it was already finalized
            (or does not exist)
        """
        pass


class StateStore(ABC):
    """Abstract base class for the experiment datastore.

    Lifecycle: initialize() once per process, connection() once per invocation,
    close() on shutdown. A connection scope owns every lock taken through it.
    """

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    def connection(self) -> "AsyncIterator[StoreConnection]":
        """Async context manager yielding a StoreConnection.

        Raises:
            DatastoreUnavailableError: If no connection can be opened
        """
        pass


# ============================================================================
# In-memory implementation
# ============================================================================


class InMemoryStateStore(StateStore):
    """In-memory datastore using Python dicts (no database).

    Storage structure:
    - experiments: Dict[int, Experiment]
    - mazes: Dict[int, Maze]
    - actions: Dict[int, List[ActionLogEntry]] - ascending step order per experiment

    Advisory locks are emulated with one asyncio.Lock per experiment id. A
    connection scope releases every lock it still holds on exit, the same way a
    Postgres session drops its advisory locks when it ends.

    ``rows_read`` counts log rows handed out by read queries so tests can check
    that windowed reads stay bounded. Set ``available = False`` to make new
    connections fail as if the database were unreachable.
    """

    def __init__(self):
        self.experiments: Dict[int, Experiment] = {}
        self.mazes: Dict[int, Maze] = {}
        self.actions: Dict[int, List[ActionLogEntry]] = {}
        self.rows_read = 0
        self.available = True
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_owners: Dict[int, "InMemoryConnection"] = {}
        self._next_experiment_id = 1
        self._next_maze_id = 1
        self._next_action_id = 1

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        # Data is kept so callers can inspect it after a run
        pass

    @asynccontextmanager
    async def connection(self) -> AsyncIterator["InMemoryConnection"]:
        if not self.available:
            raise DatastoreUnavailableError(reason="in-memory store marked unavailable")
        conn = InMemoryConnection(self)
        try:
            yield conn
        finally:
            conn.release_all()

    def lock_holder(self, key: int) -> Optional["InMemoryConnection"]:
        return self._lock_owners.get(key)

    def _lock_for(self, key: int) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]


class InMemoryConnection(StoreConnection):
    def __init__(self, store: InMemoryStateStore):
        self.store = store
        self.held: set[int] = set()

    async def advisory_lock(self, key: int, timeout: Optional[float] = None) -> None:
        lock = self.store._lock_for(key)
        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError as exc:
            raise LockTimeoutError(key, timeout) from exc
        self.held.add(key)
        self.store._lock_owners[key] = self

    async def advisory_unlock(self, key: int) -> bool:
        if key not in self.held:
            return False
        self._release(key)
        return True

    def release_all(self) -> None:
        for key in list(self.held):
            self._release(key)

    def _release(self, key: int) -> None:
        self.held.discard(key)
        self.store._lock_owners.pop(key, None)
        self.store._locks[key].release()

    async def create_experiment(self, request: ExperimentRequest, start: Position) -> Experiment:
        experiment = Experiment(
            id=self.store._next_experiment_id,
            model_name=request.model_name,
            agent_id=request.agent_id,
            prompt_version=request.prompt_version,
            maze_id=request.maze_id,
            goal_description=request.goal_description,
            start_x=start.x,
            start_y=start.y,
            started_at=datetime.now(timezone.utc),
            llm_config=request.llm_config,
        )
        self.store._next_experiment_id += 1
        self.store.experiments[experiment.id] = experiment
        return experiment.model_copy()

    async def get_experiment(self, experiment_id: int) -> Optional[Experiment]:
        experiment = self.store.experiments.get(experiment_id)
        return experiment.model_copy() if experiment else None

    async def save_maze(self, maze: Maze) -> Maze:
        stored = maze.model_copy(update={"id": self.store._next_maze_id})
        self.store._next_maze_id += 1
        self.store.mazes[stored.id] = stored
        return stored

    async def get_maze(self, maze_id: int) -> Optional[Maze]:
        return self.store.mazes.get(maze_id)

    async def latest_action(self, experiment_id: int) -> Optional[ActionLogEntry]:
        log = self.store.actions.get(experiment_id, [])
        if not log:
            return None
        self.store.rows_read += 1
        return log[-1]

    async def recent_actions(
        self,
        experiment_id: int,
        limit: Optional[int] = None,
        *,
        exploration_only: bool = False,
    ) -> List[ActionLogEntry]:
        rows = list(reversed(self.store.actions.get(experiment_id, [])))
        if exploration_only:
            rows = [row for row in rows if _is_exploration_action(row.action_type)]
        if limit is not None:
            rows = rows[:limit]
        self.store.rows_read += len(rows)
        return rows

    async def max_step_number(self, experiment_id: int) -> int:
        log = self.store.actions.get(experiment_id, [])
        return log[-1].step_number if log else 0

    async def count_actions(self, experiment_id: int) -> int:
        return len(self.store.actions.get(experiment_id, []))

    async def insert_action(self, entry: ActionLogEntry) -> None:
        log = self.store.actions.setdefault(entry.experiment_id, [])
        if any(row.step_number == entry.step_number for row in log):
            raise ValueError(
                f"duplicate step {entry.step_number} for experiment {entry.experiment_id}"
            )
        stored = entry.model_copy(
            update={
                "id": self.store._next_action_id,
                "created_at": entry.created_at or datetime.now(timezone.utc),
            },
            deep=True,
        )
        self.store._next_action_id += 1
        log.append(stored)
        log.sort(key=lambda row: row.step_number)

    async def update_turn_tokens(
        self, experiment_id: int, turn_number: int, input_tokens: int, output_tokens: int
    ) -> int:
        log = self.store.actions.get(experiment_id, [])
        updated = 0
        for index, row in enumerate(log):
            if row.turn_number == turn_number:
                log[index] = row.model_copy(
                    update={"input_tokens": input_tokens, "output_tokens": output_tokens}
                )
                updated += 1
        return updated

    async def set_goal_found(self, experiment_id: int) -> None:
        experiment = self.store.experiments.get(experiment_id)
        if experiment is not None:
            experiment.goal_found = True

    async def add_token_totals(
        self, experiment_id: int, input_tokens: int, output_tokens: int
    ) -> Experiment:
        experiment = self.store.experiments[experiment_id]
        experiment.total_input_tokens += input_tokens
        experiment.total_output_tokens += output_tokens
        return experiment.model_copy()

    async def finalize_experiment(
        self,
        experiment_id: int,
        *,
        execution_status: ExecutionStatus,
        goal_found: bool,
        completed_at: datetime,
        last_error: Optional[LastError],
        failure_reason: Optional[str],
    ) -> bool:
        experiment = self.store.experiments.get(experiment_id)
        if experiment is None or experiment.completed_at is not None:
            return False
        experiment.execution_status = execution_status
        experiment.goal_found = goal_found
        experiment.completed_at = completed_at
        experiment.last_error = last_error
        if failure_reason is not None:
            experiment.failure_reason = failure_reason
        return True


# ============================================================================
# PostgreSQL implementation
# ============================================================================


def _load_json(value: Any) -> Any:
    """asyncpg returns json/jsonb columns as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _rows_affected(status: str) -> int:
    # asyncpg returns command tags like "UPDATE 3"
    try:
        return int(status.split()[-1])
    except (IndexError, ValueError):
        return 0


def _row_to_entry(row: Any) -> ActionLogEntry:
    return ActionLogEntry(
        id=row["id"],
        experiment_id=row["experiment_id"],
        step_number=row["step_number"],
        turn_number=row["turn_number"],
        action_type=row["action_type"],
        reasoning=row["reasoning"] or "",
        from_x=row["from_x"],
        from_y=row["from_y"],
        to_x=row["to_x"],
        to_y=row["to_y"],
        success=row["success"],
        tiles_seen=_load_json(row["tiles_seen"]) or {},
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        assistant_message=row["assistant_message"],
        created_at=row["timestamp"],
    )


def _row_to_experiment(row: Any) -> Experiment:
    last_error = _load_json(row["last_error"])
    return Experiment(
        id=row["id"],
        model_name=row["model_name"],
        agent_id=row["agent_id"],
        prompt_version=row["prompt_version"],
        maze_id=row["maze_id"],
        goal_description=row["goal_description"],
        start_x=row["start_x"],
        start_y=row["start_y"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        goal_found=bool(row["goal_found"]),
        execution_status=row["execution_status"] or ExecutionStatus.RUNNING,
        last_error=LastError.model_validate(last_error) if last_error else None,
        failure_reason=row["failure_reason"],
        llm_config=_load_json(row["model_config"]),
        total_input_tokens=row["total_input_tokens"] or 0,
        total_output_tokens=row["total_output_tokens"] or 0,
    )


_ACTION_COLUMNS = """
    id, experiment_id, step_number, turn_number, action_type, reasoning,
    from_x, from_y, to_x, to_y, success, tiles_seen,
    input_tokens, output_tokens, assistant_message, timestamp
"""

_EXPLORATION_FILTER = "AND action_type <> 'no_tool_call' AND action_type NOT LIKE 'recall\\_%'"


class PostgresStateStore(StateStore):
    """PostgreSQL-backed datastore using an asyncpg pool.

    Locking uses session-level advisory locks (pg_advisory_lock). They belong to
    the backend session, not to a transaction, so:
    - the lock spans the whole read-decide-write cycle without holding a transaction open
    - a crashed or timed-out invocation drops its session and the lock with it
    - asyncpg's connection reset runs pg_advisory_unlock_all() when a
      connection goes back to the pool, so nothing leaks between invocations

    Connection management:
    - initialize() resolves the DSN (DATABASE_URL or cached credential) and creates the pool
    - connection() checks out one pooled connection per invocation
    - close() releases the pool
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        credentials: Optional[CredentialCache] = None,
        min_size: int = 1,
        max_size: int = 5,
    ):
        self.database_url = database_url
        self.credentials = credentials
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self.pool is not None:
            return
        dsn = self.database_url or await resolve_dsn(self.credentials)
        try:
            self.pool = await asyncpg.create_pool(
                dsn, min_size=self.min_size, max_size=self.max_size
            )
        except _CONNECTION_ERRORS as exc:
            raise DatastoreUnavailableError(reason=str(exc), underlying=exc) from exc

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        assert self.pool is not None, "Store not initialized"
        ddl = Config.SCHEMA_PATH.read_text("utf-8")
        async with self.pool.acquire() as conn:
            await conn.execute(ddl)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator["PostgresConnection"]:
        assert self.pool is not None, "Store not initialized"
        try:
            conn = await self.pool.acquire()
        except _CONNECTION_ERRORS as exc:
            raise DatastoreUnavailableError(reason=str(exc), underlying=exc) from exc
        try:
            yield PostgresConnection(conn)
        finally:
            await self.pool.release(conn)


class PostgresConnection(StoreConnection):
    def __init__(self, conn: "asyncpg.Connection"):
        self.conn = conn

    async def advisory_lock(self, key: int, timeout: Optional[float] = None) -> None:
        # lock_timeout also bounds advisory lock waits; 0 disables it
        timeout_ms = int((timeout or 0) * 1000)
        await self.conn.execute("SELECT set_config('lock_timeout', $1, false)", f"{timeout_ms}ms")
        try:
            await self.conn.execute("SELECT pg_advisory_lock($1)", key)
        except asyncpg.exceptions.LockNotAvailableError as exc:
            raise LockTimeoutError(key, timeout or 0) from exc
        finally:
            await self.conn.execute("SELECT set_config('lock_timeout', '0', false)")

    async def advisory_unlock(self, key: int) -> bool:
        return bool(await self.conn.fetchval("SELECT pg_advisory_unlock($1)", key))

    async def create_experiment(self, request: ExperimentRequest, start: Position) -> Experiment:
        query = """
            INSERT INTO experiments
            (agent_id, model_name, prompt_version, maze_id, goal_description,
             start_x, start_y, started_at, execution_status, model_config)
            VALUES ($1, $2, $3, $4, $5, $6, $7, NOW(), 'RUNNING', $8::jsonb)
            RETURNING *
        """
        row = await self.conn.fetchrow(
            query,
            request.agent_id,
            request.model_name,
            request.prompt_version,
            request.maze_id,
            request.goal_description,
            start.x,
            start.y,
            json.dumps(request.llm_config) if request.llm_config is not None else None,
        )
        return _row_to_experiment(row)

    async def get_experiment(self, experiment_id: int) -> Optional[Experiment]:
        row = await self.conn.fetchrow("SELECT * FROM experiments WHERE id = $1", experiment_id)
        return _row_to_experiment(row) if row else None

    async def save_maze(self, maze: Maze) -> Maze:
        payload = maze.model_dump(mode="json")
        maze_id = await self.conn.fetchval(
            """
            INSERT INTO mazes (name, width, height, grid_data, see_through_walls)
            VALUES ($1, $2, $3, $4::jsonb, $5)
            RETURNING id
            """,
            maze.name,
            maze.width,
            maze.height,
            json.dumps(payload["grid_data"]),
            maze.see_through_walls,
        )
        return maze.model_copy(update={"id": maze_id})

    async def get_maze(self, maze_id: int) -> Optional[Maze]:
        row = await self.conn.fetchrow(
            "SELECT id, name, width, height, grid_data, see_through_walls FROM mazes WHERE id = $1",
            maze_id,
        )
        if not row:
            return None
        return Maze(
            id=row["id"],
            name=row["name"],
            width=row["width"],
            height=row["height"],
            grid_data=_load_json(row["grid_data"]),
            see_through_walls=bool(row["see_through_walls"]),
        )

    async def latest_action(self, experiment_id: int) -> Optional[ActionLogEntry]:
        row = await self.conn.fetchrow(
            f"""
            SELECT {_ACTION_COLUMNS}
            FROM agent_actions
            WHERE experiment_id = $1
            ORDER BY step_number DESC
            LIMIT 1
            """,
            experiment_id,
        )
        return _row_to_entry(row) if row else None

    async def recent_actions(
        self,
        experiment_id: int,
        limit: Optional[int] = None,
        *,
        exploration_only: bool = False,
    ) -> List[ActionLogEntry]:
        extra = _EXPLORATION_FILTER if exploration_only else ""
        # LIMIT NULL reads the whole log
        rows = await self.conn.fetch(
            f"""
            SELECT {_ACTION_COLUMNS}
            FROM agent_actions
            WHERE experiment_id = $1 {extra}
            ORDER BY step_number DESC
            LIMIT $2
            """,
            experiment_id,
            limit,
        )
        log_db(f"Read {len(rows)} log rows for experiment {experiment_id}")
        return [_row_to_entry(row) for row in rows]

    async def max_step_number(self, experiment_id: int) -> int:
        value = await self.conn.fetchval(
            "SELECT MAX(step_number) FROM agent_actions WHERE experiment_id = $1",
            experiment_id,
        )
        return value or 0

    async def count_actions(self, experiment_id: int) -> int:
        return await self.conn.fetchval(
            "SELECT COUNT(*) FROM agent_actions WHERE experiment_id = $1", experiment_id
        )

    async def insert_action(self, entry: ActionLogEntry) -> None:
        payload = entry.model_dump(mode="json")
        await self.conn.execute(
            """
            INSERT INTO agent_actions
            (experiment_id, step_number, turn_number, action_type, reasoning,
             from_x, from_y, to_x, to_y, success, tiles_seen,
             input_tokens, output_tokens, assistant_message)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13, $14)
            """,
            entry.experiment_id,
            entry.step_number,
            entry.turn_number,
            entry.action_type,
            entry.reasoning,
            entry.from_x,
            entry.from_y,
            entry.to_x,
            entry.to_y,
            entry.success,
            json.dumps(payload["tiles_seen"]),
            entry.input_tokens,
            entry.output_tokens,
            entry.assistant_message,
        )

    async def update_turn_tokens(
        self, experiment_id: int, turn_number: int, input_tokens: int, output_tokens: int
    ) -> int:
        status = await self.conn.execute(
            """
            UPDATE agent_actions
            SET input_tokens = $3, output_tokens = $4
            WHERE experiment_id = $1 AND turn_number = $2
            """,
            experiment_id,
            turn_number,
            input_tokens,
            output_tokens,
        )
        return _rows_affected(status)

    async def set_goal_found(self, experiment_id: int) -> None:
        await self.conn.execute(
            "UPDATE experiments SET goal_found = true WHERE id = $1", experiment_id
        )

    async def add_token_totals(
        self, experiment_id: int, input_tokens: int, output_tokens: int
    ) -> Experiment:
        row = await self.conn.fetchrow(
            """
            UPDATE experiments
            SET total_input_tokens = COALESCE(total_input_tokens, 0) + $2,
                total_output_tokens = COALESCE(total_output_tokens, 0) + $3
            WHERE id = $1
            RETURNING *
            """,
            experiment_id,
            input_tokens,
            output_tokens,
        )
        return _row_to_experiment(row)

    async def finalize_experiment(
        self,
        experiment_id: int,
        *,
        execution_status: ExecutionStatus,
        goal_found: bool,
        completed_at: datetime,
        last_error: Optional[LastError],
        failure_reason: Optional[str],
    ) -> bool:
        status = await self.conn.execute(
            """
            UPDATE experiments
            SET completed_at = $2,
                goal_found = $3,
                execution_status = $4,
                last_error = $5::jsonb,
                failure_reason = COALESCE($6, failure_reason)
            WHERE id = $1 AND completed_at IS NULL
            """,
            experiment_id,
            completed_at,
            goal_found,
            execution_status.value,
            last_error.model_dump_json() if last_error else None,
            failure_reason,
        )
        return _rows_affected(status) == 1

"""Experiment-scoped exclusive lock.

The lock is the only thing that orders turns of one experiment: two invocations
that read the same log tail without it would both act from the same position
and one of the moves would be lost. It is taken on the invocation's own
connection, so a crashed invocation releases it when its session ends; no
application-level expiry is involved.
"""

from __future__ import annotations

from typing import Optional

from .config import Config
from .errors import LockError, LockNotHeldError
from .logging_utils import log_lock, log_warning
from .persistence import StoreConnection


class ExperimentLock:
    """Advisory lock for one experiment on one connection.

    Not reentrant: an invocation has a single critical section per experiment,
    so a second acquire() on a held lock is a bug and raises LockError.

    Usage:
        async with ExperimentLock(conn, experiment_id):
            ...  # read position, append actions
    """

    def __init__(
        self,
        conn: StoreConnection,
        experiment_id: int,
        *,
        timeout: Optional[float] = None,
    ):
        self.conn = conn
        self.experiment_id = experiment_id
        self.timeout = Config.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        """Block until the lock is held.

        Raises:
            LockError: If this lock is already held (nested acquisition)
            LockTimeoutError: If another invocation kept it past the timeout
        """
        if self._held:
            raise LockError(
                self.experiment_id, "lock already held by this invocation; nested acquisition is not allowed"
            )
        log_lock(f"Waiting for lock on experiment {self.experiment_id}")
        await self.conn.advisory_lock(self.experiment_id, self.timeout)
        self._held = True
        log_lock(f"Acquired lock for experiment {self.experiment_id}")

    async def release(self) -> None:
        if not self._held:
            return
        self._held = False
        released = await self.conn.advisory_unlock(self.experiment_id)
        if released:
            log_lock(f"Released lock for experiment {self.experiment_id}")
        else:
            log_warning(f"Lock for experiment {self.experiment_id} was not held by this session")

    def require(self, operation: str) -> None:
        """Raise LockNotHeldError unless the lock is currently held."""
        if not self._held:
            raise LockNotHeldError(self.experiment_id, operation)

    async def __aenter__(self) -> "ExperimentLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # By now the body's writes are committed (or its error is in flight).
        # An unlock failure must not turn a recorded turn into a reported failure;
        # the session teardown releases the lock instead.
        try:
            await self.release()
        except Exception as unlock_error:
            outcome = "after error" if exc_type is not None else "after a recorded turn"
            log_warning(
                f"Failed to release lock for experiment {self.experiment_id} "
                f"{outcome} ({unlock_error}); it is released when the connection closes"
            )

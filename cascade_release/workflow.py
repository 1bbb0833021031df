"""Durable activity-graph execution with checkpoint/resume.

A Workflow is a DAG of activities. Each activity is a plain synchronous
callable (a side effect such as publishing or tagging). Running a workflow
under a run id records a terminal checkpoint per activity in a
CheckpointStore; running the same run id again replays recorded results
instead of invoking the side effects a second time.

Per activity:

    pending → running → completed | failed      (terminal, checkpointed)
    pending → skipped                           (a predecessor did not complete)

Activities start as soon as all of their predecessors completed. Writers
for the same (run id, key) are serialized through a store lease, so two
concurrent resumes of one run never execute a side effect twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .errors import CheckpointConflictError
from .graph import compute_layers

logger = logging.getLogger(__name__)

# Replays finish well below this; real side effects rarely do.
RESUME_THRESHOLD_MS = 50.0
DEFAULT_LEASE_TTL = 600.0
DEFAULT_CHECKPOINT_DB = Path(".release") / "workflow.db"


class ActivityState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (ActivityState.COMPLETED, ActivityState.FAILED)


class Checkpoint(BaseModel):
    """Terminal record of one activity within one run."""

    state: ActivityState
    result: Any = None
    error: str | None = None
    attempts: int = 1
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventKind(str, Enum):
    ACTIVITY_STARTED = "activity_started"
    ACTIVITY_COMPLETED = "activity_completed"
    ACTIVITY_FAILED = "activity_failed"
    ACTIVITY_SKIPPED = "activity_skipped"
    WORKFLOW_COMPLETED = "workflow_completed"


class WorkflowEvent(BaseModel):
    """Lifecycle event emitted while a workflow runs.

    Attributes:
        resumed: Duration heuristic; True when the activity finished faster
                 than RESUME_THRESHOLD_MS. A genuinely fast side effect is
                 reported as resumed too.
        replayed: Exact; True when the outcome came from a checkpoint
                  recorded by an earlier run.
    """

    kind: EventKind
    activity: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: ActivityState | None = None
    duration_ms: float | None = None
    resumed: bool = False
    replayed: bool = False
    error: str | None = None


Observer = Callable[[WorkflowEvent], None]


# ── Checkpoint stores ───────────────────────────────────────────────────────


class CheckpointStore:
    """Key-value store of terminal checkpoints keyed by (run_id, key).

    Subclasses implement storage and the lease primitives. A lease is held
    by one owner at a time; leases older than lease_ttl seconds are
    considered abandoned and may be taken over.
    """

    lease_ttl: float = DEFAULT_LEASE_TTL

    def get(self, run_id: str, key: str) -> Checkpoint | None:
        raise NotImplementedError

    def put(self, run_id: str, key: str, checkpoint: Checkpoint) -> None:
        """Record a terminal checkpoint.

        Raises:
            CheckpointConflictError: A checkpoint for the key already exists.
        """
        raise NotImplementedError

    def try_acquire(self, run_id: str, key: str, owner: str) -> bool:
        raise NotImplementedError

    def release(self, run_id: str, key: str, owner: str) -> None:
        raise NotImplementedError

    def discard_failed(self, run_id: str) -> int:
        """Delete failed checkpoints of a run so a later run retries them."""
        raise NotImplementedError

    def runs(self) -> list[str]:
        raise NotImplementedError

    def checkpoints(self, run_id: str) -> dict[str, Checkpoint]:
        raise NotImplementedError

    @asynccontextmanager
    async def lease(
        self, run_id: str, key: str, owner: str, poll_interval: float = 0.05
    ) -> AsyncIterator[None]:
        """Hold the single-writer lease for (run_id, key) while in the block.

        The lease is renewed every lease_ttl / 3 seconds until the block
        exits, so a long side effect keeps it.
        """
        while not await asyncio.to_thread(self.try_acquire, run_id, key, owner):
            await asyncio.sleep(poll_interval)
        done = asyncio.Event()
        heartbeat = asyncio.create_task(self._renew(run_id, key, owner, done))
        try:
            yield
        finally:
            done.set()
            await heartbeat
            await asyncio.to_thread(self.release, run_id, key, owner)

    async def _renew(self, run_id: str, key: str, owner: str, done: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(done.wait(), self.lease_ttl / 3)
                return
            except asyncio.TimeoutError:
                pass
            if not await asyncio.to_thread(self.try_acquire, run_id, key, owner):
                logger.warning("Lost the lease on %s/%s to another run", run_id, key)
                return


class MemoryCheckpointStore(CheckpointStore):
    """In-process store. Lost when the process exits; used in tests and dry runs."""

    def __init__(self, lease_ttl: float = DEFAULT_LEASE_TTL) -> None:
        self.lease_ttl = lease_ttl
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], Checkpoint] = {}
        self._leases: dict[tuple[str, str], tuple[str, float]] = {}

    def get(self, run_id: str, key: str) -> Checkpoint | None:
        with self._lock:
            return self._records.get((run_id, key))

    def put(self, run_id: str, key: str, checkpoint: Checkpoint) -> None:
        with self._lock:
            if (run_id, key) in self._records:
                raise CheckpointConflictError(f"Checkpoint already recorded for {run_id}/{key}")
            self._records[(run_id, key)] = checkpoint

    def try_acquire(self, run_id: str, key: str, owner: str) -> bool:
        now = time.time()
        with self._lock:
            holder = self._leases.get((run_id, key))
            if holder and holder[0] != owner and holder[1] > now:
                return False
            self._leases[(run_id, key)] = (owner, now + self.lease_ttl)
            return True

    def release(self, run_id: str, key: str, owner: str) -> None:
        with self._lock:
            holder = self._leases.get((run_id, key))
            if holder and holder[0] == owner:
                del self._leases[(run_id, key)]

    def discard_failed(self, run_id: str) -> int:
        with self._lock:
            failed = [
                k
                for k, c in self._records.items()
                if k[0] == run_id and c.state is ActivityState.FAILED
            ]
            for k in failed:
                del self._records[k]
            return len(failed)

    def runs(self) -> list[str]:
        with self._lock:
            return sorted({run_id for run_id, _ in self._records})

    def checkpoints(self, run_id: str) -> dict[str, Checkpoint]:
        with self._lock:
            return {k: c for (r, k), c in self._records.items() if r == run_id}


class SqliteCheckpointStore(CheckpointStore):
    """Checkpoints persisted in a SQLite database file.

    Every call opens its own connection, so the store can be used from
    worker threads and from several processes at once. Lease changes run in
    an IMMEDIATE transaction to serialize competing writers.
    """

    def __init__(
        self,
        db_path: str | Path = DEFAULT_CHECKPOINT_DB,
        lease_ttl: float = DEFAULT_LEASE_TTL,
    ) -> None:
        self.db_path = Path(db_path)
        self.lease_ttl = lease_ttl
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection in autocommit mode."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS checkpoints (
                    run_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    state TEXT NOT NULL,
                    result TEXT,
                    error TEXT,
                    attempts INTEGER NOT NULL,
                    recorded_at TEXT NOT NULL,
                    PRIMARY KEY (run_id, key)
                );
                CREATE TABLE IF NOT EXISTS leases (
                    run_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    expires_at REAL NOT NULL,
                    PRIMARY KEY (run_id, key)
                );
                """
            )

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            state=ActivityState(row["state"]),
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error=row["error"],
            attempts=row["attempts"],
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )

    def get(self, run_id: str, key: str) -> Checkpoint | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM checkpoints WHERE run_id = ? AND key = ?", (run_id, key)
            ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def put(self, run_id: str, key: str, checkpoint: Checkpoint) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO checkpoints
                        (run_id, key, state, result, error, attempts, recorded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        key,
                        checkpoint.state.value,
                        json.dumps(checkpoint.result) if checkpoint.result is not None else None,
                        checkpoint.error,
                        checkpoint.attempts,
                        checkpoint.recorded_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise CheckpointConflictError(
                f"Checkpoint already recorded for {run_id}/{key}"
            ) from exc

    def try_acquire(self, run_id: str, key: str, owner: str) -> bool:
        now = time.time()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "DELETE FROM leases WHERE run_id = ? AND key = ? AND expires_at <= ?",
                    (run_id, key, now),
                )
                row = conn.execute(
                    "SELECT owner FROM leases WHERE run_id = ? AND key = ?", (run_id, key)
                ).fetchone()
                if row is not None and row["owner"] != owner:
                    conn.execute("ROLLBACK")
                    return False
                conn.execute(
                    """
                    INSERT OR REPLACE INTO leases (run_id, key, owner, expires_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (run_id, key, owner, now + self.lease_ttl),
                )
                conn.execute("COMMIT")
                return True
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

    def release(self, run_id: str, key: str, owner: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM leases WHERE run_id = ? AND key = ? AND owner = ?",
                (run_id, key, owner),
            )

    def discard_failed(self, run_id: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM checkpoints WHERE run_id = ? AND state = ?",
                (run_id, ActivityState.FAILED.value),
            )
            return cursor.rowcount

    def runs(self) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT run_id FROM checkpoints ORDER BY run_id"
            ).fetchall()
        return [row["run_id"] for row in rows]

    def checkpoints(self, run_id: str) -> dict[str, Checkpoint]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM checkpoints WHERE run_id = ? ORDER BY recorded_at", (run_id,)
            ).fetchall()
        return {row["key"]: self._row_to_checkpoint(row) for row in rows}


# ── Workflow ────────────────────────────────────────────────────────────────


@dataclass
class Activity:
    key: str
    fn: Callable[[], Any]
    after: list[str] = field(default_factory=list)
    retries: int = 0
    retry_delay: float = 0.0


class WorkflowResult(BaseModel):
    """Outcome of one workflow run: the state of every activity."""

    run_id: str
    states: dict[str, ActivityState] = Field(default_factory=dict)
    results: dict[str, Any] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    events: list[WorkflowEvent] = Field(default_factory=list)

    def _with_state(self, state: ActivityState) -> list[str]:
        return [k for k, s in self.states.items() if s is state]

    @property
    def completed(self) -> list[str]:
        return self._with_state(ActivityState.COMPLETED)

    @property
    def failed(self) -> list[str]:
        return self._with_state(ActivityState.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with_state(ActivityState.SKIPPED)

    @property
    def ok(self) -> bool:
        return all(s is ActivityState.COMPLETED for s in self.states.values())


class Workflow:
    """A DAG of activities executed durably under a run id.

    Example:
        wf = Workflow()
        wf.add("build", build)
        wf.add("upload", upload, after=["build"], retries=2)
        result = wf.run_sync("run-1", SqliteCheckpointStore())
    """

    def __init__(self, name: str = "workflow") -> None:
        self.name = name
        self._activities: dict[str, Activity] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._activities

    def __len__(self) -> int:
        return len(self._activities)

    @property
    def keys(self) -> list[str]:
        return list(self._activities)

    def predecessors(self, key: str) -> list[str]:
        return list(self._activities[key].after)

    def add(
        self,
        key: str,
        fn: Callable[[], Any],
        after: Iterable[str] | None = None,
        retries: int = 0,
        retry_delay: float = 0.0,
    ) -> str:
        """Add an activity.

        Predecessors must already be part of the workflow, which keeps the
        graph acyclic by construction.

        Returns:
            The activity key, for chaining.

        Raises:
            ValueError: Duplicate key, unknown predecessor or negative retries.
        """
        if key in self._activities:
            raise ValueError(f"Duplicate activity: {key}")
        after = list(after or [])
        missing = [a for a in after if a not in self._activities]
        if missing:
            raise ValueError(f"Unknown predecessor(s) for {key}: {', '.join(missing)}")
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self._activities[key] = Activity(key, fn, after, retries, retry_delay)
        return key

    def layers(self) -> list[list[str]]:
        """Activities grouped by depth. For progress display only."""
        return compute_layers({k: a.after for k, a in self._activities.items()})

    async def run(
        self,
        run_id: str,
        store: CheckpointStore,
        concurrency: int | None = None,
        observers: Iterable[Observer] = (),
    ) -> WorkflowResult:
        """Execute every activity, replaying the ones already checkpointed.

        Args:
            run_id: Identity of the run. Reusing it resumes the run.
            store: Where checkpoints and leases live.
            concurrency: Maximum activities running at once (None = unbounded).
            observers: Callables receiving every WorkflowEvent.
        """
        observers = list(observers)
        result = WorkflowResult(run_id=run_id)
        owner = f"{os.getpid()}:{uuid.uuid4().hex}"
        semaphore = asyncio.Semaphore(concurrency) if concurrency else None
        tasks: dict[str, asyncio.Task[ActivityState]] = {}

        def emit(event: WorkflowEvent) -> None:
            result.events.append(event)
            for observer in observers:
                observer(event)

        async def run_node(activity: Activity) -> ActivityState:
            for dep in activity.after:
                if await tasks[dep] is not ActivityState.COMPLETED:
                    result.states[activity.key] = ActivityState.SKIPPED
                    emit(
                        WorkflowEvent(
                            kind=EventKind.ACTIVITY_SKIPPED,
                            activity=activity.key,
                            outcome=ActivityState.SKIPPED,
                        )
                    )
                    return ActivityState.SKIPPED

            result.states[activity.key] = ActivityState.PENDING
            async with semaphore if semaphore else nullcontext():
                async with store.lease(run_id, activity.key, owner):
                    return await self._execute(activity, run_id, store, result, emit)

        for activity in self._activities.values():
            tasks[activity.key] = asyncio.create_task(run_node(activity))
        await asyncio.gather(*tasks.values())

        emit(
            WorkflowEvent(
                kind=EventKind.WORKFLOW_COMPLETED,
                outcome=ActivityState.COMPLETED if result.ok else ActivityState.FAILED,
            )
        )
        logger.info(
            "Run %s: %d completed, %d failed, %d skipped",
            run_id,
            len(result.completed),
            len(result.failed),
            len(result.skipped),
        )
        return result

    async def _execute(
        self,
        activity: Activity,
        run_id: str,
        store: CheckpointStore,
        result: WorkflowResult,
        emit: Callable[[WorkflowEvent], None],
    ) -> ActivityState:
        started = time.perf_counter()
        emit(WorkflowEvent(kind=EventKind.ACTIVITY_STARTED, activity=activity.key))

        checkpoint = await asyncio.to_thread(store.get, run_id, activity.key)
        replayed = checkpoint is not None
        if checkpoint is None:
            result.states[activity.key] = ActivityState.RUNNING
            checkpoint = await self._attempt(activity)
            try:
                await asyncio.to_thread(store.put, run_id, activity.key, checkpoint)
            except CheckpointConflictError:
                winner = await asyncio.to_thread(store.get, run_id, activity.key)
                if winner is None:
                    raise
                logger.warning("%s was recorded by another run; keeping its result", activity.key)
                checkpoint, replayed = winner, True
        else:
            logger.debug("Replaying %s from checkpoint (%s)", activity.key, checkpoint.state.value)

        duration_ms = (time.perf_counter() - started) * 1000
        result.states[activity.key] = checkpoint.state
        if checkpoint.state is ActivityState.COMPLETED:
            result.results[activity.key] = checkpoint.result
        else:
            result.errors[activity.key] = checkpoint.error or "unknown error"

        emit(
            WorkflowEvent(
                kind=(
                    EventKind.ACTIVITY_COMPLETED
                    if checkpoint.state is ActivityState.COMPLETED
                    else EventKind.ACTIVITY_FAILED
                ),
                activity=activity.key,
                outcome=checkpoint.state,
                duration_ms=duration_ms,
                resumed=duration_ms < RESUME_THRESHOLD_MS,
                replayed=replayed,
                error=checkpoint.error,
            )
        )
        return checkpoint.state

    async def _attempt(self, activity: Activity) -> Checkpoint:
        """Run the side effect with retries and build its terminal checkpoint."""
        last_error = ""
        for attempt in range(1, activity.retries + 2):
            try:
                value = await asyncio.to_thread(activity.fn)
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    activity.key,
                    attempt,
                    activity.retries + 1,
                    exc,
                )
                if attempt <= activity.retries and activity.retry_delay:
                    await asyncio.sleep(activity.retry_delay)
                continue
            return Checkpoint(state=ActivityState.COMPLETED, result=value, attempts=attempt)

        return Checkpoint(
            state=ActivityState.FAILED,
            error=last_error,
            attempts=activity.retries + 1,
        )

    def run_sync(
        self,
        run_id: str,
        store: CheckpointStore,
        concurrency: int | None = None,
        observers: Iterable[Observer] = (),
    ) -> WorkflowResult:
        """Blocking wrapper around run()."""
        return asyncio.run(self.run(run_id, store, concurrency, observers))

"""Tests for cascade_release.workflow."""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest

from cascade_release.errors import CheckpointConflictError
from cascade_release.workflow import (
    RESUME_THRESHOLD_MS,
    ActivityState,
    Checkpoint,
    CheckpointStore,
    EventKind,
    MemoryCheckpointStore,
    SqliteCheckpointStore,
    Workflow,
    WorkflowEvent,
)


class Counter:
    """Callable side effect that records how often it ran."""

    def __init__(self, value: object = "ok", fail_times: int = 0) -> None:
        self.value = value
        self.fail_times = fail_times
        self.calls = 0

    def __call__(self) -> object:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError(f"boom {self.calls}")
        return self.value


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> CheckpointStore:
    if request.param == "memory":
        return MemoryCheckpointStore()
    return SqliteCheckpointStore(tmp_path / "workflow.db")


class TestCheckpointStore:
    """Behaviour shared by every store implementation."""

    def test_get_put(self, store: CheckpointStore) -> None:
        assert store.get("run", "a") is None

        store.put("run", "a", Checkpoint(state=ActivityState.COMPLETED, result={"tag": "x"}))

        checkpoint = store.get("run", "a")
        assert checkpoint.state is ActivityState.COMPLETED
        assert checkpoint.result == {"tag": "x"}
        assert store.get("other", "a") is None

    def test_second_put_conflicts(self, store: CheckpointStore) -> None:
        store.put("run", "a", Checkpoint(state=ActivityState.COMPLETED))

        with pytest.raises(CheckpointConflictError):
            store.put("run", "a", Checkpoint(state=ActivityState.FAILED, error="late"))

        assert store.get("run", "a").state is ActivityState.COMPLETED

    def test_lease_single_owner(self, store: CheckpointStore) -> None:
        assert store.try_acquire("run", "a", "one")
        assert store.try_acquire("run", "a", "one")
        assert not store.try_acquire("run", "a", "two")
        assert store.try_acquire("run", "b", "two")

        store.release("run", "a", "two")
        assert not store.try_acquire("run", "a", "two")

        store.release("run", "a", "one")
        assert store.try_acquire("run", "a", "two")

    def test_expired_lease_taken_over(self, store: CheckpointStore) -> None:
        store.lease_ttl = 0.0

        assert store.try_acquire("run", "a", "one")
        assert store.try_acquire("run", "a", "two")

    def test_discard_failed(self, store: CheckpointStore) -> None:
        store.put("run", "a", Checkpoint(state=ActivityState.COMPLETED))
        store.put("run", "b", Checkpoint(state=ActivityState.FAILED, error="x"))
        store.put("other", "b", Checkpoint(state=ActivityState.FAILED, error="x"))

        assert store.discard_failed("run") == 1

        assert set(store.checkpoints("run")) == {"a"}
        assert store.get("other", "b") is not None

    def test_runs(self, store: CheckpointStore) -> None:
        store.put("b-run", "a", Checkpoint(state=ActivityState.COMPLETED))
        store.put("a-run", "a", Checkpoint(state=ActivityState.COMPLETED))

        assert store.runs() == ["a-run", "b-run"]


class TestSqlitePersistence:
    def test_survives_reopen(self, tmp_path: Path) -> None:
        db = tmp_path / "nested" / "workflow.db"
        SqliteCheckpointStore(db).put(
            "run", "a", Checkpoint(state=ActivityState.FAILED, error="nope", attempts=3)
        )

        checkpoint = SqliteCheckpointStore(db).get("run", "a")

        assert checkpoint.state is ActivityState.FAILED
        assert checkpoint.error == "nope"
        assert checkpoint.attempts == 3

    def test_resume_across_store_instances(self, tmp_path: Path) -> None:
        db = tmp_path / "workflow.db"
        effect = Counter()
        wf = Workflow()
        wf.add("a", effect)

        wf.run_sync("run", SqliteCheckpointStore(db))
        result = wf.run_sync("run", SqliteCheckpointStore(db))

        assert effect.calls == 1
        assert result.states == {"a": ActivityState.COMPLETED}


class TestWorkflowAdd:
    def test_duplicate_key(self) -> None:
        wf = Workflow()
        wf.add("a", Counter())

        with pytest.raises(ValueError, match="Duplicate"):
            wf.add("a", Counter())

    def test_unknown_predecessor(self) -> None:
        with pytest.raises(ValueError, match="Unknown predecessor"):
            Workflow().add("b", Counter(), after=["a"])

    def test_negative_retries(self) -> None:
        with pytest.raises(ValueError):
            Workflow().add("a", Counter(), retries=-1)

    def test_graph_accessors(self) -> None:
        wf = Workflow()
        wf.add("a", Counter())
        wf.add("b", Counter(), after=["a"])
        wf.add("c", Counter())

        assert len(wf) == 3
        assert "b" in wf
        assert wf.keys == ["a", "b", "c"]
        assert wf.predecessors("b") == ["a"]
        assert wf.layers() == [["a", "c"], ["b"]]


class TestWorkflowRun:
    """Tests for Workflow.run()."""

    def test_runs_in_dependency_order(self) -> None:
        order: list[str] = []
        wf = Workflow()
        wf.add("a", lambda: order.append("a"))
        wf.add("b", lambda: order.append("b"), after=["a"])
        wf.add("c", lambda: order.append("c"), after=["b"])

        result = wf.run_sync("run", MemoryCheckpointStore())

        assert order == ["a", "b", "c"]
        assert result.ok
        assert result.completed == ["a", "b", "c"]

    def test_results_recorded(self) -> None:
        wf = Workflow()
        wf.add("a", Counter({"tag": "core@1.0.0"}))

        result = wf.run_sync("run", MemoryCheckpointStore())

        assert result.results == {"a": {"tag": "core@1.0.0"}}

    def test_retries_until_success(self) -> None:
        store = MemoryCheckpointStore()
        effect = Counter(fail_times=2)
        wf = Workflow()
        wf.add("a", effect, retries=2)

        result = wf.run_sync("run", store)

        assert result.ok
        assert effect.calls == 3
        assert store.get("run", "a").attempts == 3

    def test_failure_after_retries_skips_successors(self) -> None:
        effect = Counter(fail_times=10)
        after = Counter()
        wf = Workflow()
        wf.add("a", effect, retries=1)
        wf.add("b", after, after=["a"])
        wf.add("c", Counter())

        result = wf.run_sync("run", MemoryCheckpointStore())

        assert effect.calls == 2
        assert after.calls == 0
        assert result.states == {
            "a": ActivityState.FAILED,
            "b": ActivityState.SKIPPED,
            "c": ActivityState.COMPLETED,
        }
        assert result.errors["a"] == "boom 2"
        assert not result.ok

    def test_skipped_activities_leave_no_checkpoint(self) -> None:
        store = MemoryCheckpointStore()
        wf = Workflow()
        wf.add("a", Counter(fail_times=1))
        wf.add("b", Counter(), after=["a"])

        wf.run_sync("run", store)

        assert set(store.checkpoints("run")) == {"a"}

    def test_replay_does_not_reinvoke(self) -> None:
        store = MemoryCheckpointStore()
        effect = Counter()
        wf = Workflow()
        wf.add("a", effect)

        first = wf.run_sync("run", store)
        second = wf.run_sync("run", store)

        assert effect.calls == 1
        assert second.results == first.results
        completed = [e for e in second.events if e.kind is EventKind.ACTIVITY_COMPLETED]
        assert completed[0].replayed
        assert completed[0].resumed

    def test_failed_checkpoint_is_terminal(self) -> None:
        store = MemoryCheckpointStore()
        effect = Counter(fail_times=1)
        wf = Workflow()
        wf.add("a", effect)

        wf.run_sync("run", store)
        replay = wf.run_sync("run", store)

        assert effect.calls == 1
        assert replay.failed == ["a"]

        store.discard_failed("run")
        retried = wf.run_sync("run", store)

        assert effect.calls == 2
        assert retried.ok

    def test_slow_fresh_activity_not_resumed(self) -> None:
        wf = Workflow()
        wf.add("a", lambda: time.sleep(RESUME_THRESHOLD_MS / 1000 * 2))

        result = wf.run_sync("run", MemoryCheckpointStore())

        event = next(e for e in result.events if e.kind is EventKind.ACTIVITY_COMPLETED)
        assert not event.resumed
        assert not event.replayed

    def test_observers_receive_every_event(self) -> None:
        seen: list[WorkflowEvent] = []
        wf = Workflow()
        wf.add("a", Counter())

        result = wf.run_sync("run", MemoryCheckpointStore(), observers=[seen.append])

        assert seen == result.events
        assert [e.kind for e in seen] == [
            EventKind.ACTIVITY_STARTED,
            EventKind.ACTIVITY_COMPLETED,
            EventKind.WORKFLOW_COMPLETED,
        ]

    def test_concurrency_limit(self) -> None:
        lock = threading.Lock()
        running = 0
        peak = 0

        def effect() -> None:
            nonlocal running, peak
            with lock:
                running += 1
                peak = max(peak, running)
            time.sleep(0.02)
            with lock:
                running -= 1

        wf = Workflow()
        for n in range(6):
            wf.add(f"a{n}", effect)

        result = wf.run_sync("run", MemoryCheckpointStore(), concurrency=2)

        assert result.ok
        assert peak <= 2

    def test_independent_chains_isolated(self) -> None:
        wf = Workflow()
        wf.add("Publish:a", Counter(fail_times=5))
        wf.add("CreateTag:a", Counter(), after=["Publish:a"])
        wf.add("Publish:b", Counter())
        wf.add("CreateTag:b", Counter(), after=["Publish:b"])

        result = wf.run_sync("run", MemoryCheckpointStore())

        assert result.completed == ["Publish:b", "CreateTag:b"]
        assert result.skipped == ["CreateTag:a"]


class SlowCounter(Counter):
    def __init__(self, seconds: float) -> None:
        super().__init__()
        self.seconds = seconds

    def __call__(self) -> object:
        value = super().__call__()
        time.sleep(self.seconds)
        return value


class UnguardedStore(MemoryCheckpointStore):
    """Hands every caller the lease, so concurrent runs race on put()."""

    def try_acquire(self, run_id: str, key: str, owner: str) -> bool:
        return True


async def run_twice(wf: Workflow, store: CheckpointStore) -> list[object]:
    return await asyncio.gather(wf.run("run", store), wf.run("run", store))


class TestConcurrentRuns:
    """Two runs of the same run id at once."""

    def test_side_effect_runs_once(self, store: CheckpointStore) -> None:
        effect = SlowCounter(0.1)
        wf = Workflow()
        wf.add("Publish:core@1.0.0", effect)

        results = asyncio.run(run_twice(wf, store))

        assert effect.calls == 1
        assert all(r.ok for r in results)
        replayed = [
            e.replayed
            for r in results
            for e in r.events
            if e.kind is EventKind.ACTIVITY_COMPLETED
        ]
        assert sorted(replayed) == [False, True]

    def test_lease_renewed_during_long_activity(self) -> None:
        store = MemoryCheckpointStore(lease_ttl=0.05)
        effect = SlowCounter(0.3)
        wf = Workflow()
        wf.add("Publish:core@1.0.0", effect)

        results = asyncio.run(run_twice(wf, store))

        assert effect.calls == 1
        assert all(r.ok for r in results)

    def test_lost_put_race_keeps_recorded_result(self) -> None:
        store = UnguardedStore()
        wf = Workflow()
        wf.add("Publish:core@1.0.0", SlowCounter(0.05))

        results = asyncio.run(run_twice(wf, store))

        assert all(r.ok for r in results)
        events = [
            e for r in results for e in r.events if e.kind is EventKind.ACTIVITY_COMPLETED
        ]
        assert [e.replayed for e in events].count(True) == 1
        assert store.get("run", "Publish:core@1.0.0").state is ActivityState.COMPLETED

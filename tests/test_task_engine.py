"""Tests for the task engine (task_engine/engine.py) and store (task_engine/store.py)."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
import yaml

from taskgraph.task_engine.engine import TaskEngine
from taskgraph.task_engine.errors import (
    CycleError,
    GraphFormatError,
    InvalidRangeError,
    TaskInUseError,
    UnknownTaskError,
)
from taskgraph.task_engine.model import ComputedProgress, OffsetBase, Progress, Task
from taskgraph.task_engine.store import TaskStore


class FakeClock:
    def __init__(self, now: int = 1_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".taskgraph"
    d.mkdir()
    return d


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(state_dir: Path, clock: FakeClock) -> TaskEngine:
    return TaskEngine(state_dir, clock=clock)


@pytest.fixture
def store(state_dir: Path) -> TaskStore:
    return TaskStore(state_dir)


# ---------------------------------------------------------------------------
# Store tests
# ---------------------------------------------------------------------------

class TestTaskStore:
    def test_empty_read(self, store: TaskStore) -> None:
        graph = store.read_snapshot()
        assert len(graph) == 0

    def test_add_and_read(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.graph.add(Task(0, "First"))
            tx.graph.add(Task(1, "Second", dependencies={0}))
            tx.dirty = True

        graph = store.read_snapshot()
        assert [t.id for t in graph] == [0, 1]
        assert graph.tasks[0].dependees == {1}

    def test_clean_transaction_does_not_write(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.graph.add(Task(0, "Unsaved"))
        assert not store.path.exists()

    def test_failed_transaction_does_not_write(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.graph.add(Task(0, "Kept"))
            tx.dirty = True

        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.graph.remove(0)
                tx.dirty = True
                raise RuntimeError("boom")

        assert 0 in store.read_snapshot()

    def test_file_is_yaml_records(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.graph.add(Task(0, "Write report", deadline=5_000))
            tx.dirty = True

        data = yaml.safe_load(store.path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["tasks"][0]["name"] == "Write report"
        assert data["tasks"][0]["deadline"] == 5_000
        assert data["tasks"][0]["birthline"] is None

    def test_corrupt_file_is_not_overwritten(self, store: TaskStore) -> None:
        store.path.write_text("tasks: [unclosed", encoding="utf-8")
        with pytest.raises(GraphFormatError):
            with store.transaction() as tx:
                tx.dirty = True
        assert store.path.read_text(encoding="utf-8") == "tasks: [unclosed"

    def test_concurrent_transactions(self, state_dir: Path, store: TaskStore) -> None:
        errors: list[Exception] = []

        def worker() -> None:
            own = TaskStore(state_dir)
            try:
                for _ in range(5):
                    with own.transaction() as tx:
                        tid = tx.graph.smallest_available_id()
                        tx.graph.add(Task(tid, f"task {tid}"))
                        tx.dirty = True
            except Exception as exc:  # pragma: no cover - surfaced via assertion
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.read_snapshot()) == 20


# ---------------------------------------------------------------------------
# Engine tests
# ---------------------------------------------------------------------------

class TestCreateAndRead:
    def test_create_allocates_smallest_id(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        b = engine.create_task("b")
        assert (a.id, b.id) == (0, 1)

        engine.delete_task(0)
        c = engine.create_task("c")
        assert c.id == 0

    def test_create_with_dependencies_propagates(self, engine: TaskEngine) -> None:
        dep = engine.create_task("dep", deadline=9_000, priority=1)
        top = engine.create_task("top", deadline=5_000, priority=7, dependencies=[dep.id])
        assert top.dependencies == {dep.id}

        stored = engine.get_task(dep.id)
        assert stored is not None
        assert stored.computed_priority == 7
        assert stored.computed_deadline == 5_000
        assert stored.dependees == {top.id}

    def test_create_empty_name(self, engine: TaskEngine) -> None:
        with pytest.raises(ValueError, match="must not be empty"):
            engine.create_task("")

    def test_create_unknown_dependency(self, engine: TaskEngine) -> None:
        with pytest.raises(UnknownTaskError):
            engine.create_task("orphan", dependencies=[42])
        assert engine.list_tasks() == []

    def test_create_invalid_range(self, engine: TaskEngine) -> None:
        with pytest.raises(InvalidRangeError):
            engine.create_task("backwards", birthline=500, deadline=100)
        assert engine.list_tasks() == []

    def test_invalid_range_through_propagation(self, engine: TaskEngine) -> None:
        late = engine.create_task("late start", birthline=8_000)
        with pytest.raises(InvalidRangeError):
            engine.create_task("urgent", deadline=2_000, dependencies=[late.id])
        assert [t.id for t in engine.list_tasks()] == [late.id]

    def test_default_priority(self, state_dir: Path, clock: FakeClock) -> None:
        engine = TaskEngine(state_dir, clock=clock, default_priority=3)
        assert engine.create_task("a").priority == 3
        assert engine.create_task("b", priority=0).priority == 0

    def test_get_missing(self, engine: TaskEngine) -> None:
        assert engine.get_task(99) is None

    def test_list_filters(self, engine: TaskEngine) -> None:
        done = engine.create_task("Ship release", progress="done")
        engine.create_task("Write notes", description="release notes", dependencies=[done.id])
        engine.create_task("Unrelated", progress="started")

        assert [t.name for t in engine.list_tasks(progress="started")] == ["Unrelated"]
        assert [t.name for t in engine.list_tasks(computed_progress="done")] == ["Ship release"]
        assert [t.name for t in engine.list_tasks(search="RELEASE")] == ["Ship release", "Write notes"]
        assert [t.name for t in engine.list_tasks(roots_only=True)] == ["Write notes", "Unrelated"]

    def test_summary(self, engine: TaskEngine) -> None:
        dep = engine.create_task("dep")
        engine.create_task("top", dependencies=[dep.id])
        done = engine.create_task("done", progress="done")
        engine.create_task("later", birthline=50_000, dependencies=[done.id])
        counts = engine.summary()
        assert counts["todo"] == 1
        assert counts["blocked"] == 1
        assert counts["notyet"] == 1
        assert counts["done"] == 1


class TestUpdateAndDelete:
    def test_update_fields(self, engine: TaskEngine) -> None:
        t = engine.create_task("old", deadline=5_000)
        updated = engine.update_task(t.id, {"name": "new", "deadline": None, "progress": "started"})
        assert updated.name == "new"
        assert updated.deadline == float("inf")
        assert updated.computed_progress == ComputedProgress.STARTED

    def test_update_rejects_computed_fields(self, engine: TaskEngine) -> None:
        t = engine.create_task("a")
        with pytest.raises(ValueError, match="read-only"):
            engine.update_task(t.id, {"computed_priority": 9})

    def test_update_rejects_empty_name(self, engine: TaskEngine) -> None:
        t = engine.create_task("a")
        with pytest.raises(ValueError, match="must not be empty"):
            engine.update_task(t.id, {"name": ""})
        assert engine.get_task(t.id).name == "a"

    def test_update_unknown_task(self, engine: TaskEngine) -> None:
        with pytest.raises(UnknownTaskError):
            engine.update_task(3, {"name": "x"})

    def test_update_replaces_dependencies(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        b = engine.create_task("b")
        top = engine.create_task("top", dependencies=[a.id])
        engine.update_task(top.id, {"dependencies": [b.id]})
        assert engine.get_task(top.id).dependencies == {b.id}
        assert engine.get_task(a.id).dependees == set()

    def test_update_recurrence(self, engine: TaskEngine) -> None:
        t = engine.create_task("weekly")
        updated = engine.update_task(t.id, {"recurrence": {"offset": 7, "offset_base": "finished"}})
        assert updated.recurrence.offset == 7
        assert updated.recurrence.offset_base == OffsetBase.FINISHED

        cleared = engine.update_task(t.id, {"recurrence": None})
        assert cleared.recurrence is None

    def test_marking_done_unblocks_dependee(self, engine: TaskEngine, clock: FakeClock) -> None:
        dep = engine.create_task("dep")
        top = engine.create_task("top", dependencies=[dep.id])
        assert engine.get_task(top.id).computed_progress == ComputedProgress.BLOCKED

        clock.now = 2_500
        engine.update_task(dep.id, {"progress": "done"})
        assert engine.get_task(dep.id).finished == 2_500
        assert engine.get_task(top.id).computed_progress == ComputedProgress.TODO

    def test_finished_survives_later_reads(self, engine: TaskEngine, clock: FakeClock) -> None:
        t = engine.create_task("a")
        clock.now = 2_000
        engine.update_task(t.id, {"progress": "done"})
        clock.now = 9_000
        assert engine.get_task(t.id).finished == 2_000

    def test_reopened_leaf_clears_finished(self, engine: TaskEngine, clock: FakeClock) -> None:
        t = engine.create_task("a", progress="done")
        assert engine.get_task(t.id).finished == 1_000
        updated = engine.update_task(t.id, {"progress": "started"})
        assert updated.finished is None
        assert updated.computed_progress == ComputedProgress.STARTED

    def test_leaf_ignores_birthline_and_group_like(self, engine: TaskEngine) -> None:
        later = engine.create_task("later", birthline=50_000)
        group = engine.create_task("group", group_like=True)
        late = engine.create_task("late", deadline=500, auto_fail=True, progress="started")
        assert engine.get_task(later.id).computed_progress == ComputedProgress.TODO
        assert engine.get_task(group.id).computed_progress == ComputedProgress.TODO
        assert engine.get_task(late.id).computed_progress == ComputedProgress.STARTED

    @pytest.mark.parametrize("field", ["name", "description", "priority", "progress", "auto_fail", "dependencies"])
    def test_update_rejects_null(self, engine: TaskEngine, field: str) -> None:
        t = engine.create_task("a", description="keep")
        with pytest.raises(ValueError, match="cannot be null"):
            engine.update_task(t.id, {field: None})
        stored = engine.list_tasks()
        assert [s.description for s in stored] == ["keep"]
        assert stored[0].priority == 0

    def test_delete(self, engine: TaskEngine) -> None:
        t = engine.create_task("a")
        deleted = engine.delete_task(t.id)
        assert deleted.id == t.id
        assert engine.get_task(t.id) is None

    def test_delete_with_dependees(self, engine: TaskEngine) -> None:
        dep = engine.create_task("dep")
        top = engine.create_task("top", dependencies=[dep.id])
        with pytest.raises(TaskInUseError) as excinfo:
            engine.delete_task(dep.id)
        assert excinfo.value.dependees == [top.id]
        assert engine.get_task(dep.id) is not None


class TestDependencies:
    def test_add_and_remove(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        b = engine.create_task("b")
        task = engine.add_dependency(b.id, a.id)
        assert task.dependencies == {a.id}
        assert task.computed_progress == ComputedProgress.BLOCKED

        task = engine.remove_dependency(b.id, a.id)
        assert task.dependencies == set()
        assert task.computed_progress == ComputedProgress.TODO

    def test_cycle_is_rejected_and_not_saved(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        b = engine.create_task("b", dependencies=[a.id])
        c = engine.create_task("c", dependencies=[b.id])
        with pytest.raises(CycleError):
            engine.add_dependency(a.id, c.id)
        assert engine.get_task(a.id).dependencies == set()
        assert engine.get_task(c.id).dependees == set()

    def test_self_dependency(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        with pytest.raises(CycleError):
            engine.add_dependency(a.id, a.id)
        assert engine.get_task(a.id).dependencies == set()

    def test_unknown_dependency(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        with pytest.raises(UnknownTaskError):
            engine.add_dependency(a.id, 17)

    def test_possible_dependencies(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        b = engine.create_task("b", dependencies=[a.id])
        c = engine.create_task("c")
        assert engine.get_task(b.id).possible_dependencies == {c.id}
        assert engine.get_task(a.id).possible_dependencies == {c.id}


class TestRecurrence:
    def test_preview_and_promote(self, engine: TaskEngine, clock: FakeClock) -> None:
        t = engine.create_task("standup", deadline=10_000, recurrence={"offset": 1_000})
        assert t.recurrence.next_instance is None

        clock.now = 9_500
        t = engine.update_task(t.id, {"progress": "done"})
        preview = t.recurrence.next_instance
        assert preview is not None
        assert preview.deadline == 11_000
        assert preview.progress == Progress.TODO
        assert preview.id not in engine.evaluate()

        promoted = engine.promote_next_instance(t.id)
        assert promoted.id == 1
        assert promoted.name == "standup"
        assert promoted.deadline == 11_000
        assert promoted.recurrence.offset == 1_000
        assert engine.get_task(t.id).recurrence is None

    def test_promote_without_preview(self, engine: TaskEngine) -> None:
        t = engine.create_task("a", recurrence={"offset": 5})
        with pytest.raises(ValueError, match="no next instance"):
            engine.promote_next_instance(t.id)

    def test_bad_recurrence_input(self, engine: TaskEngine) -> None:
        with pytest.raises(ValueError, match="offset"):
            engine.create_task("a", recurrence={"offset_base": "deadline"})


class TestEvaluateAndInterchange:
    def test_evaluate_at_explicit_time(self, engine: TaskEngine) -> None:
        dep = engine.create_task("dep", progress="done")
        t = engine.create_task("fail me", deadline=5_000, auto_fail=True, dependencies=[dep.id])
        graph = engine.evaluate(now=6_000)
        assert graph.tasks[t.id].computed_progress == ComputedProgress.FAILED

    def test_export_import_roundtrip(self, engine: TaskEngine, tmp_path: Path, clock: FakeClock) -> None:
        a = engine.create_task("a", deadline=3_000)
        engine.create_task("b", dependencies=[a.id], priority=4)
        text = engine.export_json()

        other = TaskEngine(tmp_path / "other" / ".taskgraph", clock=clock)
        graph = other.import_json(text)
        assert len(graph) == 2
        assert other.get_task(a.id).computed_priority == 4
        assert json.loads(other.export_json())["tasks"] == json.loads(text)["tasks"]

    def test_import_rejects_cycle(self, engine: TaskEngine) -> None:
        engine.create_task("keep me")
        doc = json.dumps({"tasks": [
            {"id": 0, "name": "a", "dependencies": [1]},
            {"id": 1, "name": "b", "dependencies": [0]},
        ]})
        with pytest.raises(CycleError):
            engine.import_json(doc)
        assert [t.name for t in engine.list_tasks()] == ["keep me"]

    def test_import_rejects_bad_document(self, engine: TaskEngine) -> None:
        with pytest.raises(GraphFormatError):
            engine.import_json('{"tasks": [{"id": 0}]}')


class TestEvents:
    def test_events_are_recorded(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        engine.update_task(a.id, {"priority": 2})
        engine.delete_task(a.id)
        types = [e["type"] for e in engine.get_recent_events()]
        assert types == ["task.created", "task.updated", "task.deleted"]
        assert all("ts" in e for e in engine.get_recent_events())

    def test_event_limit(self, engine: TaskEngine) -> None:
        for name in ("a", "b", "c"):
            engine.create_task(name)
        events = engine.get_recent_events(limit=2)
        assert [e["task_id"] for e in events] == [1, 2]

    def test_events_disabled(self, state_dir: Path, clock: FakeClock) -> None:
        engine = TaskEngine(state_dir, clock=clock, events_enabled=False)
        engine.create_task("a")
        assert engine.get_recent_events() == []

    def test_rejected_operation_records_nothing(self, engine: TaskEngine) -> None:
        a = engine.create_task("a")
        with pytest.raises(CycleError):
            engine.add_dependency(a.id, a.id)
        assert [e["type"] for e in engine.get_recent_events()] == ["task.created"]

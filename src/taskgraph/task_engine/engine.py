"""Task engine: CRUD and dependency editing on top of the stored graph.

This is the primary entry-point for task manipulation.  Every operation runs
inside one :class:`TaskStore` transaction: mutate the graph, re-run
:func:`evaluate`, and persist.  If evaluation rejects the result (cycle,
birthline after deadline) the exception propagates and nothing is saved.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Union

from loguru import logger

from ..constants import ARTIFACTS_DIR, DEFAULT_PRIORITY, EVENTS_FILE
from ..io_utils import _append_event, _read_events
from ..utils import birthline_from_ms, deadline_from_ms, now_ms
from .compute import evaluate
from .model import ComputedProgress, OffsetBase, Progress, Recurrence, Task, TaskGraph
from .schema import dumps_graph, loads_graph
from .store import TaskStore

RecurrenceInput = Union[Recurrence, dict[str, Any], None]

# Fields a caller may change; everything computed_* is owned by evaluate().
_STORED_FIELDS = frozenset({
    "name",
    "description",
    "deadline",
    "birthline",
    "priority",
    "progress",
    "auto_fail",
    "group_like",
    "recurrence",
    "dependencies",
})

# Stored fields that accept None, meaning "no constraint" or "no rule".
_NULLABLE_FIELDS = frozenset({"deadline", "birthline", "recurrence"})


def _settle_leaf(task: Task, now: int) -> None:
    """Carry the stored progress of a task without dependencies into its
    computed progress, stamping or clearing ``finished`` on the way.

    :func:`evaluate` returns leaves unchanged, so this is the only place
    their computed progress and finish time follow an edit.
    """
    new = ComputedProgress.from_progress(task.progress)
    if new == ComputedProgress.DONE:
        if not task.is_done or task.finished is None:
            task.finished = now
    else:
        task.finished = None
    task.computed_progress = new


def _coerce_recurrence(value: RecurrenceInput) -> Optional[Recurrence]:
    if value is None or isinstance(value, Recurrence):
        return value
    if not isinstance(value, dict) or "offset" not in value:
        raise ValueError("recurrence must be an object with an 'offset'")
    return Recurrence(
        offset=int(value["offset"]),
        offset_base=OffsetBase(value.get("offset_base") or OffsetBase.DEADLINE.value),
    )


class TaskEngine:
    """Manage the tasks of one project.

    Parameters
    ----------
    state_dir:
        Path to the ``.taskgraph/`` directory.
    clock:
        Returns the current time in milliseconds; defaults to the wall clock.
    """

    def __init__(
        self,
        state_dir: Path,
        clock: Optional[Callable[[], int]] = None,
        default_priority: int = DEFAULT_PRIORITY,
        events_enabled: bool = True,
    ) -> None:
        self.store = TaskStore(state_dir)
        self.default_priority = default_priority
        self.events_enabled = events_enabled
        self._clock = clock or now_ms
        self._events_path = state_dir / ARTIFACTS_DIR / EVENTS_FILE

    def _emit_event(self, event_type: str, task_id: Optional[int] = None, **details: Any) -> None:
        if not self.events_enabled:
            return
        payload: dict[str, Any] = {"type": event_type}
        if task_id is not None:
            payload["task_id"] = task_id
        if details:
            payload["details"] = details
        try:
            _append_event(self._events_path, payload)
        except OSError:
            logger.exception("Failed to append task event {} for {}", event_type, task_id)

    def get_recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return _read_events(self._events_path, limit)

    def _evaluate(self, graph: TaskGraph, now: Optional[int] = None) -> int:
        now = self._clock() if now is None else now
        for task in graph:
            if not task.dependencies:
                _settle_leaf(task, now)
        evaluate(graph, now)
        return now

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_task(
        self,
        name: str,
        description: str = "",
        deadline: Optional[int] = None,
        birthline: Optional[int] = None,
        priority: Optional[int] = None,
        progress: str = "todo",
        auto_fail: bool = False,
        group_like: bool = False,
        dependencies: Optional[list[int]] = None,
        recurrence: RecurrenceInput = None,
    ) -> Task:
        """Create, link and persist a new task, returning it evaluated."""
        if not name:
            raise ValueError("Task name must not be empty")

        with self.store.transaction() as tx:
            task = Task(
                id=tx.graph.smallest_available_id(),
                name=name,
                description=description,
                deadline=deadline_from_ms(deadline),
                birthline=birthline_from_ms(birthline),
                priority=self.default_priority if priority is None else priority,
                progress=Progress(progress),
                auto_fail=auto_fail,
                group_like=group_like,
                recurrence=_coerce_recurrence(recurrence),
                dependencies=set(dependencies or []),
            )
            tx.graph.add(task)
            self._evaluate(tx.graph)
            tx.dirty = True

        self._emit_event("task.created", task.id, dependencies=sorted(task.dependencies))
        logger.info("Created task {}: {}", task.id, name)
        return task

    def get_task(self, task_id: int) -> Optional[Task]:
        graph = self.evaluate()
        return graph.get(task_id)

    def list_tasks(
        self,
        *,
        progress: Optional[str] = None,
        computed_progress: Optional[str] = None,
        search: Optional[str] = None,
        roots_only: bool = False,
    ) -> list[Task]:
        out: list[Task] = []
        for t in self.evaluate():
            if progress and t.progress.value != progress:
                continue
            if computed_progress and t.computed_progress.value != computed_progress:
                continue
            if roots_only and not t.is_root:
                continue
            if search:
                q = search.lower()
                if q not in t.name.lower() and q not in t.description.lower():
                    continue
            out.append(t)
        return out

    def update_task(self, task_id: int, changes: dict[str, Any]) -> Task:
        """Apply partial updates to the stored fields of a task.

        ``deadline``/``birthline`` set to ``None`` remove the constraint and
        ``recurrence`` set to ``None`` drops the rule; no other field may be
        ``None``.
        """
        unknown = sorted(set(changes) - _STORED_FIELDS)
        if unknown:
            raise ValueError(f"Unknown or read-only task fields: {unknown}")
        not_nullable = sorted(k for k, v in changes.items() if v is None and k not in _NULLABLE_FIELDS)
        if not_nullable:
            raise ValueError(f"Task fields cannot be null: {not_nullable}")

        with self.store.transaction() as tx:
            task = tx.graph.require(task_id)
            for key, value in changes.items():
                if key == "dependencies":
                    tx.graph.set_dependencies(task_id, value)
                elif key == "deadline":
                    task.deadline = deadline_from_ms(value)
                elif key == "birthline":
                    task.birthline = birthline_from_ms(value)
                elif key == "progress":
                    task.progress = Progress(value)
                elif key == "recurrence":
                    task.recurrence = _coerce_recurrence(value)
                elif key == "name" and not value:
                    raise ValueError("Task name must not be empty")
                else:
                    setattr(task, key, value)
            self._evaluate(tx.graph)
            tx.dirty = True

        self._emit_event("task.updated", task_id, fields=sorted(changes))
        return task

    def delete_task(self, task_id: int) -> Task:
        """Remove a task; refused while other tasks depend on it."""
        with self.store.transaction() as tx:
            task = tx.graph.remove(task_id)
            self._evaluate(tx.graph)
            tx.dirty = True

        self._emit_event("task.deleted", task_id)
        logger.info("Deleted task {}", task_id)
        return task

    # ------------------------------------------------------------------
    # Dependency management
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: int, depends_on_id: int) -> Task:
        """Make *task_id* depend on *depends_on_id*.

        Raises :class:`CycleError` if the new edge closes a cycle.
        """
        with self.store.transaction() as tx:
            tx.graph.link(task_id, depends_on_id)
            self._evaluate(tx.graph)
            tx.dirty = True
            task = tx.graph.require(task_id)

        self._emit_event("task.updated", task_id, added_dependency=depends_on_id)
        return task

    def remove_dependency(self, task_id: int, depends_on_id: int) -> Task:
        with self.store.transaction() as tx:
            tx.graph.unlink(task_id, depends_on_id)
            self._evaluate(tx.graph)
            tx.dirty = True
            task = tx.graph.require(task_id)

        self._emit_event("task.updated", task_id, removed_dependency=depends_on_id)
        return task

    # ------------------------------------------------------------------
    # Evaluation and recurrence
    # ------------------------------------------------------------------

    def evaluate(self, now: Optional[int] = None) -> TaskGraph:
        """Re-run the computation at *now* (default: clock) and persist it.

        Reads go through here as well, so the ``finished`` timestamps stored
        on disk always reflect the latest observed transition.
        """
        with self.store.transaction() as tx:
            self._evaluate(tx.graph, now)
            tx.dirty = True
            return tx.graph

    def promote_next_instance(self, task_id: int) -> Task:
        """Register the recurrence preview of *task_id* as a real task.

        The recurrence rule moves to the new task, so the completed one stops
        producing previews.
        """
        with self.store.transaction() as tx:
            self._evaluate(tx.graph)
            task = tx.graph.require(task_id)
            preview = task.recurrence.next_instance if task.recurrence else None
            if preview is None:
                raise ValueError(f"Task {task_id} has no next instance to promote")

            promoted = Task(
                id=tx.graph.smallest_available_id(),
                name=preview.name,
                description=preview.description,
                deadline=preview.deadline,
                priority=preview.priority,
                auto_fail=preview.auto_fail,
                group_like=preview.group_like,
                recurrence=Recurrence(
                    offset=task.recurrence.offset,
                    offset_base=task.recurrence.offset_base,
                ),
            )
            task.recurrence = None
            tx.graph.add(promoted)
            self._evaluate(tx.graph)
            tx.dirty = True

        self._emit_event("task.promoted", promoted.id, previous=task_id)
        logger.info("Promoted next instance of task {} as task {}", task_id, promoted.id)
        return promoted

    def summary(self) -> dict[str, int]:
        """Count tasks per computed progress."""
        counts = {cp.value: 0 for cp in ComputedProgress}
        for t in self.evaluate():
            counts[t.computed_progress.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Interchange
    # ------------------------------------------------------------------

    def export_json(self) -> str:
        return dumps_graph(self.store.read_snapshot())

    def import_json(self, text: str) -> TaskGraph:
        """Replace the stored graph with the one in *text* after validating it."""
        graph = loads_graph(text)
        self._evaluate(graph)
        with self.store.transaction() as tx:
            tx.graph = graph
            tx.dirty = True

        self._emit_event("graph.imported", tasks=len(graph))
        logger.info("Imported {} tasks", len(graph))
        return graph

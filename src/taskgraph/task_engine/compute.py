"""Graph computation engine.

:func:`evaluate` validates the dependency graph and fills in the computed
properties of every task:

* ``computed_priority`` / ``computed_deadline`` are pushed from each task onto
  its dependencies (max priority, min deadline), so a dependency never blocks
  a more important or more urgent dependent;
* ``computed_progress`` is derived dependencies-first from the task's own
  progress and the computed progress of its dependencies.  Tasks without
  dependencies are taken as they are: their computed progress is kept in step
  with ``progress`` by whoever edits them (see
  :class:`taskgraph.task_engine.engine.TaskEngine`);
* ``recurrence.next_instance`` previews the next occurrence of every
  recurring task that is done.

One depth-first walk per root does validation, propagation (on the way down)
and progress derivation (on the way up); recurrence is a flat sweep at the
end.  The graph is mutated in place; after a :class:`CycleError` or
:class:`InvalidRangeError` the computed fields must not be relied upon.

Propagation happens on every walked edge, including edges into tasks that
were already evaluated from another parent.  Their computed bounds therefore
end up correct, but their progress is not re-derived: the first evaluation of
a task wins for progress, the last write wins for the bounds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from loguru import logger

from .errors import CycleError, InvalidRangeError
from .model import ComputedProgress, OffsetBase, Progress, Recurrence, Task, TaskGraph


class Color(Enum):
    WHITE = "white"  # undiscovered
    GRAY = "gray"  # on the current path
    BLACK = "black"  # finished


@dataclass
class _Frame:
    task: Task
    pending: Iterator[int]
    dep_cps: list[ComputedProgress] = field(default_factory=list)


def evaluate(graph: TaskGraph, now: int) -> None:
    """Compute the computed properties of every task in *graph* at time *now*.

    Raises:
        CycleError: the dependency relation is not acyclic.
        InvalidRangeError: a task's birthline is after its computed deadline.
    """
    for task in graph:
        task.reset_bounds()

    walk = _Traversal(graph, now)
    for root in graph.roots:
        walk.run(root)

    # Tasks that were never reached hang off a cycle with no root above it.
    for task in graph:
        if walk.colors.get(task.id, Color.WHITE) is Color.WHITE:
            raise CycleError(task.id)

    previews = 0
    for task in graph:
        if task.recurrence is not None:
            task.recurrence.next_instance = _next_instance(graph, task, task.recurrence, now)
            if task.recurrence.next_instance is not None:
                previews += 1

    logger.debug(
        "Evaluated {} tasks from {} roots at {} ({} recurrence previews)",
        len(graph), len(graph.roots), now, previews,
    )


# ---------------------------------------------------------------------------
# Depth-first traversal
# ---------------------------------------------------------------------------

class _Traversal:
    """Iterative post-order walk sharing one colour map across roots."""

    def __init__(self, graph: TaskGraph, now: int) -> None:
        self.graph = graph
        self.now = now
        self.colors: dict[int, Color] = {}
        self._stack: list[_Frame] = []
        self._path: set[int] = set()

    def run(self, root: Task) -> ComputedProgress:
        cp = self._enter(root)
        if cp is not None:
            return cp
        while True:
            frame = self._stack[-1]
            dep_id = next(frame.pending, None)
            if dep_id is None:
                self._stack.pop()
                self._path.discard(frame.task.id)
                cp = _derive_progress(frame.task, frame.dep_cps, self.now)
                self.colors[frame.task.id] = Color.BLACK
                if not self._stack:
                    return cp
                self._stack[-1].dep_cps.append(cp)
                continue

            dep = self.graph.require(dep_id)
            _propagate(frame.task, dep)
            cp = self._enter(dep)
            if cp is not None:
                frame.dep_cps.append(cp)

    def _enter(self, task: Task) -> Optional[ComputedProgress]:
        """Validate *task*; return its progress if it short-circuits, else push it.

        Leaves keep the computed progress they arrived with.
        """
        color = self.colors.get(task.id, Color.WHITE)
        if color is Color.GRAY:
            raise CycleError(task.id)
        if task.birthline > task.computed_deadline:
            raise InvalidRangeError(task.id, task.birthline, task.computed_deadline)

        if color is Color.BLACK:
            return task.computed_progress

        task.possible_dependencies = (
            set(self.graph.tasks) - self._path - task.dependencies - {task.id}
        )
        if not task.dependencies:
            self.colors[task.id] = Color.BLACK
            return task.computed_progress

        self.colors[task.id] = Color.GRAY
        self._path.add(task.id)
        self._stack.append(_Frame(task, iter(sorted(task.dependencies))))
        return None


def _propagate(task: Task, dep: Task) -> None:
    dep.computed_priority = max(dep.computed_priority, task.computed_priority)
    dep.computed_deadline = min(dep.computed_deadline, task.computed_deadline)


def _derive_progress(task: Task, dep_cps: list[ComputedProgress], now: int) -> ComputedProgress:
    """Post-order progress rule; also maintains ``task.finished``."""
    old = task.computed_progress

    if task.progress == Progress.FAILED:
        new = ComputedProgress.FAILED
    elif ComputedProgress.FAILED in dep_cps:
        new = ComputedProgress.FAILED
    elif ComputedProgress.NOTYET in dep_cps:
        new = ComputedProgress.NOTYET
    elif not all(cp == ComputedProgress.DONE for cp in dep_cps):
        new = ComputedProgress.BLOCKED
    elif now < task.birthline:
        new = ComputedProgress.NOTYET
    elif task.auto_fail and old != ComputedProgress.DONE and now > task.computed_deadline:
        new = ComputedProgress.FAILED
    elif task.group_like:
        new = ComputedProgress.DONE
    else:
        new = ComputedProgress.from_progress(task.progress)

    if new == ComputedProgress.DONE:
        # A record created or loaded as done has no finish time yet.
        if old != ComputedProgress.DONE or task.finished is None:
            task.finished = now
    else:
        task.finished = None

    task.computed_progress = new
    return new


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------

def _next_instance(graph: TaskGraph, task: Task, rule: Recurrence, now: int) -> Optional[Task]:
    if not task.is_done:
        return None
    if rule.offset_base == OffsetBase.DEADLINE:
        next_deadline = task.computed_deadline + rule.offset
    else:
        # A done record without a finish time was finished now.
        finished = task.finished if task.finished is not None else now
        next_deadline = finished + rule.offset
    return Task(
        id=graph.smallest_available_id(),
        name=task.name,
        description=task.description,
        deadline=next_deadline,
        priority=task.priority,
        auto_fail=task.auto_fail,
        group_like=task.group_like,
        recurrence=Recurrence(offset=rule.offset, offset_base=rule.offset_base),
    )

"""Task model and the in-memory task graph.

A :class:`Task` carries stored fields (set by users) and computed fields
(derived by :func:`taskgraph.task_engine.compute.evaluate`), all prefixed
with ``computed_``.  Tasks reference each other only by integer id; the
:class:`TaskGraph` arena owns every record and is the only place where the
``dependencies``/``dependees`` mirror is edited.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Optional

from ..utils import ms_or_none
from .errors import TaskInUseError, UnknownTaskError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Progress(str, Enum):
    """Stored, user-set progress of a task."""

    TODO = "todo"
    STARTED = "started"
    DONE = "done"
    FAILED = "failed"


class ComputedProgress(str, Enum):
    """Displayed progress: :class:`Progress` plus two derived states.

    ``blocked`` means some dependency is not done yet; ``notyet`` means the
    task (or something it depends on) has a birthline in the future.
    """

    TODO = "todo"
    STARTED = "started"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"
    NOTYET = "notyet"

    @classmethod
    def from_progress(cls, progress: Progress) -> "ComputedProgress":
        return cls(progress.value)


class OffsetBase(str, Enum):
    """What a recurrence offset is counted from."""

    DEADLINE = "deadline"  # even if the task was finished after its deadline
    FINISHED = "finished"  # whenever it was finished


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Recurrence:
    """How a task recurs.

    ``next_instance`` is a computed preview of the next occurrence.  It is
    replaced on every evaluation and never registered in the graph by the
    engine.
    """

    offset: int
    offset_base: OffsetBase = OffsetBase.DEADLINE
    next_instance: Optional["Task"] = None


@dataclass
class Task:
    """One node of the task graph."""

    id: int
    name: str = ""
    description: str = ""

    # Stored constraints; infinities mean "no constraint"
    deadline: float = math.inf
    birthline: float = -math.inf
    priority: int = 0
    progress: Progress = Progress.TODO
    auto_fail: bool = False
    group_like: bool = False
    recurrence: Optional[Recurrence] = None

    # Moment computed_progress last became done, None while not done
    finished: Optional[int] = None

    # Edges, as task ids
    dependencies: set[int] = field(default_factory=set)
    dependees: set[int] = field(default_factory=set)

    # Computed properties
    computed_deadline: Optional[float] = None
    computed_priority: Optional[int] = None
    computed_progress: Optional[ComputedProgress] = None
    possible_dependencies: set[int] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.computed_deadline is None:
            self.computed_deadline = self.deadline
        if self.computed_priority is None:
            self.computed_priority = self.priority
        if self.computed_progress is None:
            self.computed_progress = ComputedProgress.from_progress(self.progress)

    def reset_bounds(self) -> None:
        """Start a new evaluation pass from the stored priority and deadline."""
        self.computed_priority = self.priority
        self.computed_deadline = self.deadline

    @property
    def is_done(self) -> bool:
        return self.computed_progress == ComputedProgress.DONE

    @property
    def is_root(self) -> bool:
        return not self.dependees

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self, nested: bool = True) -> dict[str, Any]:
        """JSON-friendly view of stored and computed fields.

        Infinite deadlines and birthlines are rendered as ``None``.  With
        *nested*, a recurrence preview is embedded as a dict; otherwise only
        its id is given.
        """
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "deadline": ms_or_none(self.deadline),
            "computed_deadline": ms_or_none(self.computed_deadline),
            "birthline": ms_or_none(self.birthline),
            "priority": self.priority,
            "computed_priority": self.computed_priority,
            "progress": self.progress.value,
            "computed_progress": self.computed_progress.value if self.computed_progress else None,
            "finished": self.finished,
            "auto_fail": self.auto_fail,
            "group_like": self.group_like,
            "dependencies": sorted(self.dependencies),
            "dependees": sorted(self.dependees),
            "possible_dependencies": sorted(self.possible_dependencies),
            "recurrence": _recurrence_to_dict(self.recurrence, nested),
        }


def _recurrence_to_dict(rec: Optional[Recurrence], nested: bool) -> Optional[dict[str, Any]]:
    if rec is None:
        return None
    next_instance: Any = None
    if rec.next_instance is not None:
        if nested:
            # One level only: a loaded graph may link a recurrence back to its own task.
            next_instance = rec.next_instance.to_dict(nested=False)
        else:
            next_instance = rec.next_instance.id
    return {
        "offset": rec.offset,
        "offset_base": rec.offset_base.value,
        "next_instance": next_instance,
    }


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass
class TaskGraph:
    """Arena of :class:`Task` records addressed by id.

    Roots are the tasks nothing depends on; they are derived from the
    ``dependees`` sets, so a task that loses its last dependee becomes a root
    again without any bookkeeping.
    """

    tasks: dict[int, Task] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def __iter__(self) -> Iterator[Task]:
        for task_id in sorted(self.tasks):
            yield self.tasks[task_id]

    @property
    def roots(self) -> list[Task]:
        return [t for t in self if not t.dependees]

    def get(self, task_id: int) -> Optional[Task]:
        return self.tasks.get(task_id)

    def require(self, task_id: int) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    # -- mutations ----------------------------------------------------------

    def add(self, task: Task) -> Task:
        """Register *task*, linking the dependency ids it already lists."""
        if task.id in self.tasks:
            raise ValueError(f"Task {task.id} already exists")
        wanted = set(task.dependencies)
        for dep_id in sorted(wanted):
            if dep_id != task.id:
                self.require(dep_id)
        task.dependencies = set()
        task.dependees = set()
        self.tasks[task.id] = task
        for dep_id in sorted(wanted):
            self.link(task.id, dep_id)
        return task

    def remove(self, task_id: int) -> Task:
        """Remove a task nothing depends on, dropping its outgoing edges."""
        task = self.require(task_id)
        if task.dependees:
            raise TaskInUseError(task_id, sorted(task.dependees))
        for dep_id in list(task.dependencies):
            self.unlink(task_id, dep_id)
        del self.tasks[task_id]
        return task

    def link(self, task_id: int, dep_id: int) -> None:
        """Make *task_id* depend on *dep_id*.

        Cycles are not rejected here; the next evaluation reports them.
        """
        task = self.require(task_id)
        dep = self.require(dep_id)
        task.dependencies.add(dep_id)
        dep.dependees.add(task_id)

    def unlink(self, task_id: int, dep_id: int) -> None:
        task = self.require(task_id)
        dep = self.require(dep_id)
        task.dependencies.discard(dep_id)
        dep.dependees.discard(task_id)

    def set_dependencies(self, task_id: int, dep_ids: Iterable[int]) -> None:
        """Replace the dependency set of *task_id*, all or nothing."""
        task = self.require(task_id)
        wanted = set(dep_ids)
        for dep_id in sorted(wanted):
            self.require(dep_id)
        for dep_id in sorted(task.dependencies - wanted):
            self.unlink(task_id, dep_id)
        for dep_id in sorted(wanted - task.dependencies):
            self.link(task_id, dep_id)

    # -- id allocation ------------------------------------------------------

    def smallest_available_id(self) -> int:
        """Smallest non-negative id not in use.

        The id is not reserved: insert the new task before allocating again.
        """
        for candidate in range(len(self.tasks)):
            if candidate not in self.tasks:
                return candidate
        return len(self.tasks)

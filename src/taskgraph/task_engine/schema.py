"""Interchange form of a task graph.

A graph is stored and exchanged as an ordered list of task records.  Records
use ``null`` in place of infinite deadlines and birthlines, list their
dependencies by id, and refer to a recurrence's next instance by id.  The
pydantic models below validate untrusted input before it is linked into a
:class:`TaskGraph`.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..constants import STORE_VERSION
from ..utils import birthline_from_ms, deadline_from_ms, ms_or_none
from .errors import GraphFormatError
from .model import ComputedProgress, OffsetBase, Progress, Recurrence, Task, TaskGraph


class RecurrenceRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    offset: int
    offset_base: OffsetBase = OffsetBase.DEADLINE
    next_instance: Optional[int] = None


class TaskRecord(BaseModel):
    """One task as it appears in the interchange form."""

    model_config = ConfigDict(extra="forbid")

    id: int = Field(ge=0)
    name: str = Field(min_length=1)
    description: str = ""
    deadline: Optional[int] = None
    birthline: Optional[int] = None
    priority: int = 0
    progress: Progress = Progress.TODO
    # Last derived progress; lets the "finished" transition survive a reload.
    computed_progress: Optional[ComputedProgress] = None
    finished: Optional[int] = None
    auto_fail: bool = False
    group_like: bool = False
    dependencies: list[int] = Field(default_factory=list)
    recurrence: Optional[RecurrenceRecord] = None


class TaskGraphDocument(BaseModel):
    version: int = STORE_VERSION
    tasks: list[TaskRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "TaskGraphDocument":
        seen: set[int] = set()
        for record in self.tasks:
            if record.id in seen:
                raise ValueError(f"duplicate task id: {record.id}")
            seen.add(record.id)
        return self


# ---------------------------------------------------------------------------
# Records <-> graph
# ---------------------------------------------------------------------------

def validate_records(raw: Any) -> list[TaskRecord]:
    """Validate a raw ``{"tasks": [...]}`` payload (or a bare list)."""
    if isinstance(raw, list):
        raw = {"tasks": raw}
    try:
        return TaskGraphDocument.model_validate(raw).tasks
    except ValidationError as exc:
        raise GraphFormatError(f"Invalid task graph: {exc}") from exc


def graph_from_records(records: Iterable[TaskRecord]) -> TaskGraph:
    """Link validated records into a :class:`TaskGraph`.

    Raises:
        UnknownTaskError: a record depends on an id that is not in the list.
    """
    records = list(records)
    graph = TaskGraph()
    for rec in records:
        graph.add(Task(
            id=rec.id,
            name=rec.name,
            description=rec.description,
            deadline=deadline_from_ms(rec.deadline),
            birthline=birthline_from_ms(rec.birthline),
            priority=rec.priority,
            progress=rec.progress,
            computed_progress=rec.computed_progress,
            finished=rec.finished,
            auto_fail=rec.auto_fail,
            group_like=rec.group_like,
        ))

    for rec in records:
        for dep_id in rec.dependencies:
            graph.link(rec.id, dep_id)
        if rec.recurrence is not None:
            next_id = rec.recurrence.next_instance
            graph.tasks[rec.id].recurrence = Recurrence(
                offset=rec.recurrence.offset,
                offset_base=rec.recurrence.offset_base,
                next_instance=graph.get(next_id) if next_id is not None else None,
            )
    return graph


def task_to_record(task: Task) -> dict[str, Any]:
    recurrence: Optional[dict[str, Any]] = None
    if task.recurrence is not None:
        nxt = task.recurrence.next_instance
        recurrence = {
            "offset": task.recurrence.offset,
            "offset_base": task.recurrence.offset_base.value,
            "next_instance": nxt.id if nxt is not None else None,
        }
    return {
        "id": task.id,
        "name": task.name,
        "description": task.description,
        "deadline": ms_or_none(task.deadline),
        "birthline": ms_or_none(task.birthline),
        "priority": task.priority,
        "progress": task.progress.value,
        "computed_progress": task.computed_progress.value if task.computed_progress else None,
        "finished": task.finished,
        "auto_fail": task.auto_fail,
        "group_like": task.group_like,
        "dependencies": sorted(task.dependencies),
        "recurrence": recurrence,
    }


def graph_to_records(graph: TaskGraph) -> list[dict[str, Any]]:
    return [task_to_record(t) for t in graph]


# ---------------------------------------------------------------------------
# JSON text
# ---------------------------------------------------------------------------

def loads_graph(text: str) -> TaskGraph:
    """Parse a JSON task graph document."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise GraphFormatError(f"Invalid JSON: {exc}") from exc
    return graph_from_records(validate_records(raw))


def dumps_graph(graph: TaskGraph, *, indent: Optional[int] = 2) -> str:
    return json.dumps({"version": STORE_VERSION, "tasks": graph_to_records(graph)}, indent=indent)

"""Errors raised by the task graph and its collaborators.

All of them derive from :class:`ValueError` so callers that guard task
operations with ``except ValueError`` keep working.
"""

from __future__ import annotations


class TaskGraphError(ValueError):
    """Base class for invalid task graphs and rejected graph mutations."""


class CycleError(TaskGraphError):
    """The dependency relation contains a cycle."""

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Circular dependency through task {task_id}")
        self.task_id = task_id


class InvalidRangeError(TaskGraphError):
    """A task's birthline is after its (possibly propagated) deadline."""

    def __init__(self, task_id: int, birthline: float, deadline: float) -> None:
        super().__init__(
            f"Birthline of task {task_id} ({birthline}) is after its deadline ({deadline})"
        )
        self.task_id = task_id
        self.birthline = birthline
        self.deadline = deadline


class UnknownTaskError(TaskGraphError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Reference to non-existent task: {task_id}")
        self.task_id = task_id


class TaskInUseError(TaskGraphError):
    """A task that other tasks depend on cannot be deleted."""

    def __init__(self, task_id: int, dependees: list[int]) -> None:
        super().__init__(f"Task {task_id} is a dependency of tasks {dependees}")
        self.task_id = task_id
        self.dependees = dependees


class GraphFormatError(TaskGraphError):
    """Serialized task graph could not be parsed or failed validation."""

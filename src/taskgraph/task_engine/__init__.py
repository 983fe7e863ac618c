"""Task graph engine.

This package provides the task model, the graph computation engine
(:func:`evaluate`), the interchange codec, the file-backed store and the
:class:`TaskEngine` used by the CLI and the HTTP API.
"""

from .compute import evaluate
from .errors import (
    CycleError,
    GraphFormatError,
    InvalidRangeError,
    TaskGraphError,
    TaskInUseError,
    UnknownTaskError,
)
from .model import ComputedProgress, OffsetBase, Progress, Recurrence, Task, TaskGraph

__all__ = [
    "ComputedProgress",
    "CycleError",
    "GraphFormatError",
    "InvalidRangeError",
    "OffsetBase",
    "Progress",
    "Recurrence",
    "Task",
    "TaskGraph",
    "TaskGraphError",
    "TaskInUseError",
    "UnknownTaskError",
    "evaluate",
]

"""Provide the public `taskgraph` package exports."""

from __future__ import annotations

from .task_engine import (
    ComputedProgress,
    CycleError,
    InvalidRangeError,
    Progress,
    Task,
    TaskGraph,
    evaluate,
)

__all__ = [
    "ComputedProgress",
    "CycleError",
    "InvalidRangeError",
    "Progress",
    "Task",
    "TaskGraph",
    "evaluate",
]

"""Task API endpoints.

This module provides a FastAPI router with CRUD, dependency editing,
evaluation, recurrence promotion and import/export.  It is mounted under
``/api/tasks`` by :func:`taskgraph.server.api.create_app`.
"""

from __future__ import annotations

import json
from typing import Any, Callable, NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..task_engine.engine import TaskEngine
from ..task_engine.errors import TaskInUseError, UnknownTaskError
from ..task_engine.model import OffsetBase, Progress


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class RecurrenceRequest(BaseModel):
    offset: int
    offset_base: OffsetBase = OffsetBase.DEADLINE


class CreateTaskRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    deadline: Optional[int] = None
    birthline: Optional[int] = None
    priority: Optional[int] = None
    progress: Progress = Progress.TODO
    auto_fail: bool = False
    group_like: bool = False
    dependencies: list[int] = Field(default_factory=list)
    recurrence: Optional[RecurrenceRequest] = None


class UpdateTaskRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    deadline: Optional[int] = None
    birthline: Optional[int] = None
    priority: Optional[int] = None
    progress: Optional[Progress] = None
    auto_fail: Optional[bool] = None
    group_like: Optional[bool] = None
    dependencies: Optional[list[int]] = None
    recurrence: Optional[RecurrenceRequest] = None


class AddDependencyRequest(BaseModel):
    depends_on: int


class EvaluateRequest(BaseModel):
    now: Optional[int] = None


class TaskResponse(BaseModel):
    """Standard wrapper for task responses."""
    task: dict[str, Any]


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


class EventListResponse(BaseModel):
    events: list[dict[str, Any]]


def _raise_http(exc: ValueError) -> NoReturn:
    if isinstance(exc, UnknownTaskError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, TaskInUseError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    logger.warning("Rejected task request: {}", exc)
    raise HTTPException(status_code=400, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_task_router(get_engine: Callable[[Optional[str]], TaskEngine]) -> APIRouter:
    """Create the task API router.

    Parameters
    ----------
    get_engine:
        A callable ``(project_dir_param: str | None) -> TaskEngine`` that
        resolves the engine for the current request's project directory.
    """
    router = APIRouter(prefix="/api/tasks", tags=["tasks"])

    # ------------------------------------------------------------------
    # Graph-wide operations
    # ------------------------------------------------------------------

    @router.get("", response_model=TaskListResponse)
    async def list_tasks(
        project_dir: Optional[str] = Query(None),
        progress: Optional[str] = Query(None),
        computed_progress: Optional[str] = Query(None),
        search: Optional[str] = Query(None),
        roots_only: bool = Query(False),
    ) -> TaskListResponse:
        engine = get_engine(project_dir)
        try:
            tasks = engine.list_tasks(
                progress=progress,
                computed_progress=computed_progress,
                search=search,
                roots_only=roots_only,
            )
        except ValueError as e:
            _raise_http(e)
        data = [t.to_dict() for t in tasks]
        return TaskListResponse(tasks=data, total=len(data))

    @router.post("", response_model=TaskResponse, status_code=201)
    async def create_task(
        body: CreateTaskRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_engine(project_dir)
        try:
            task = engine.create_task(**body.model_dump(mode="json"))
        except ValueError as e:
            _raise_http(e)
        return TaskResponse(task=task.to_dict())

    @router.post("/evaluate", response_model=TaskListResponse)
    async def evaluate_graph(
        body: Optional[EvaluateRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> TaskListResponse:
        engine = get_engine(project_dir)
        try:
            graph = engine.evaluate(body.now if body else None)
        except ValueError as e:
            _raise_http(e)
        data = [t.to_dict() for t in graph]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/export")
    async def export_graph(
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        engine = get_engine(project_dir)
        try:
            text = engine.export_json()
        except ValueError as e:
            _raise_http(e)
        return json.loads(text)

    @router.post("/import", response_model=TaskListResponse)
    async def import_graph(
        body: dict[str, Any],
        project_dir: Optional[str] = Query(None),
    ) -> TaskListResponse:
        engine = get_engine(project_dir)
        try:
            graph = engine.import_json(json.dumps(body))
        except ValueError as e:
            _raise_http(e)
        data = [t.to_dict() for t in graph]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/events", response_model=EventListResponse)
    async def recent_events(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> EventListResponse:
        engine = get_engine(project_dir)
        return EventListResponse(events=engine.get_recent_events(limit))

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    @router.get("/{task_id}", response_model=TaskResponse)
    async def get_task(
        task_id: int,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_engine(project_dir)
        try:
            task = engine.get_task(task_id)
        except ValueError as e:
            _raise_http(e)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return TaskResponse(task=task.to_dict())

    @router.patch("/{task_id}", response_model=TaskResponse)
    async def update_task(
        task_id: int,
        body: UpdateTaskRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_engine(project_dir)
        # Only fields present in the body; an explicit null clears a deadline.
        changes = body.model_dump(mode="json", exclude_unset=True)
        try:
            task = engine.update_task(task_id, changes)
        except ValueError as e:
            _raise_http(e)
        return TaskResponse(task=task.to_dict())

    @router.delete("/{task_id}")
    async def delete_task(
        task_id: int,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, str]:
        engine = get_engine(project_dir)
        try:
            engine.delete_task(task_id)
        except ValueError as e:
            _raise_http(e)
        return {"status": "deleted"}

    @router.post("/{task_id}/promote", response_model=TaskResponse, status_code=201)
    async def promote_next_instance(
        task_id: int,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_engine(project_dir)
        try:
            task = engine.promote_next_instance(task_id)
        except ValueError as e:
            _raise_http(e)
        return TaskResponse(task=task.to_dict())

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    @router.post("/{task_id}/dependencies", response_model=TaskResponse)
    async def add_dependency(
        task_id: int,
        body: AddDependencyRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_engine(project_dir)
        try:
            task = engine.add_dependency(task_id, body.depends_on)
        except ValueError as e:
            _raise_http(e)
        return TaskResponse(task=task.to_dict())

    @router.delete("/{task_id}/dependencies/{dep_id}", response_model=TaskResponse)
    async def remove_dependency(
        task_id: int,
        dep_id: int,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_engine(project_dir)
        try:
            task = engine.remove_dependency(task_id, dep_id)
        except ValueError as e:
            _raise_http(e)
        return TaskResponse(task=task.to_dict())

    return router
